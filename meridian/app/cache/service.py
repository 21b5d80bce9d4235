from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def fingerprint_payload(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    fingerprint: str
    value: T
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int
    expirations: int
    coalesced: int
    entries: int
    in_flight: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return (self.hits / lookups) if lookups else 0.0


class ResultCache(Generic[T]):
    """TTL cache keyed by request fingerprint with single-flight loading.

    Concurrent ``get_or_compute`` calls for one fingerprint share a single
    computation; followers see the leader's value or its exception. Failed
    computations are never stored.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 180.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry[T]] = {}
        self._in_flight: dict[str, asyncio.Future[T]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._coalesced = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, fingerprint: str) -> T | None:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[fingerprint]
                self._expirations += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def put(self, fingerprint: str, value: T) -> None:
        now = self._clock()
        with self._lock:
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                value=value,
                expires_at=now + self._ttl_seconds,
            )
            self._evict_locked(now)

    def invalidate(self, fingerprint: str) -> bool:
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        LOGGER.info("result_cache_cleared entries=%d", cleared)
        return cleared

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
                coalesced=self._coalesced,
                entries=len(self._entries),
                in_flight=len(self._in_flight),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get_or_compute(
        self,
        fingerprint: str,
        compute: Callable[[], Awaitable[T]],
        *,
        should_store: Callable[[T], bool] = lambda _value: True,
    ) -> tuple[T, bool]:
        """Return ``(value, shared)`` where ``shared`` means no new computation ran."""
        while True:
            cached = self.get(fingerprint)
            if cached is not None:
                return cached, True

            pending = self._in_flight.get(fingerprint)
            if pending is None:
                break
            with self._lock:
                self._coalesced += 1
            try:
                return await asyncio.shield(pending), True
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # leader was cancelled; retry as a fresh caller

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._in_flight[fingerprint] = future
        try:
            value = await compute()
        except Exception as exc:
            future.set_exception(exc)
            # mark retrieved so an unobserved failure is not logged at GC
            future.exception()
            raise
        else:
            if should_store(value):
                self.put(fingerprint, value)
            future.set_result(value)
            return value, False
        finally:
            if not future.done():
                future.cancel()
            self._in_flight.pop(fingerprint, None)

    def _evict_locked(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
            self._expirations += 1
        while len(self._entries) > self._max_entries:
            oldest = min(self._entries.values(), key=lambda entry: entry.expires_at)
            del self._entries[oldest.fingerprint]
            self._evictions += 1
