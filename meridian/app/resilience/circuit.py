from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from meridian.app.resilience.contracts import (
    CircuitSnapshot,
    CircuitState,
    ErrorCategory,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitSettings:
    failure_threshold: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    max_cooldown_seconds: float = 300.0


@dataclass(frozen=True)
class Admission:
    allowed: bool
    is_probe: bool = False
    state: CircuitState = CircuitState.CLOSED


class CircuitBreaker:
    """Per-backend failure isolation.

    All transitions happen under a single ``asyncio.Lock``. In ``HALF_OPEN``
    only the caller holding the probe slot is admitted; everyone else is
    rejected exactly as if the circuit were still open.
    """

    def __init__(
        self,
        name: str,
        settings: CircuitSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._settings = settings or CircuitSettings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._failure_times: deque[float] = deque()
        self._opened_at: float | None = None
        self._last_failure_category: ErrorCategory | None = None
        self._cooldown = self._settings.cooldown_seconds
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            backend=self.name,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            opened_at=self._opened_at,
            last_failure_category=self._last_failure_category,
            cooldown_seconds=self._cooldown,
            probe_in_flight=self._probe_in_flight,
        )

    async def acquire(self) -> Admission:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return Admission(allowed=True, state=self._state)

            if self._state == CircuitState.OPEN:
                opened_at = self._opened_at if self._opened_at is not None else 0.0
                if self._clock() - opened_at < self._cooldown:
                    return Admission(allowed=False, state=self._state)
                self._transition(CircuitState.HALF_OPEN)

            if self._probe_in_flight:
                return Admission(allowed=False, state=CircuitState.OPEN)
            self._probe_in_flight = True
            return Admission(allowed=True, is_probe=True, state=self._state)

    async def record_success(self) -> None:
        async with self._lock:
            self._consecutive_failures = 0
            self._failure_times.clear()
            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._opened_at = None
                self._cooldown = self._settings.cooldown_seconds
                self._transition(CircuitState.CLOSED)

    async def record_failure(self, category: ErrorCategory) -> bool:
        """Count a backend failure. Returns True when this call opened the circuit."""
        async with self._lock:
            now = self._clock()
            self._last_failure_category = category

            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._consecutive_failures += 1
                self._cooldown = min(
                    self._cooldown * self._settings.backoff_multiplier,
                    self._settings.max_cooldown_seconds,
                )
                self._open(now)
                return True

            if self._state == CircuitState.OPEN:
                self._consecutive_failures += 1
                return False

            # only failures inside the trailing window count toward the threshold
            window_start = now - self._settings.window_seconds
            self._failure_times.append(now)
            while self._failure_times and self._failure_times[0] < window_start:
                self._failure_times.popleft()
            self._consecutive_failures = len(self._failure_times)
            if self._consecutive_failures >= self._settings.failure_threshold:
                self._open(now)
                return True
            return False

    async def release_probe(self) -> None:
        """Give back a probe slot when the probe ended without a verdict."""
        async with self._lock:
            self._probe_in_flight = False

    async def reset(self) -> None:
        async with self._lock:
            self._consecutive_failures = 0
            self._failure_times.clear()
            self._opened_at = None
            self._last_failure_category = None
            self._cooldown = self._settings.cooldown_seconds
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def _open(self, now: float) -> None:
        self._failure_times.clear()
        self._opened_at = now
        self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        if state == self._state:
            return
        LOGGER.warning(
            "circuit_transition backend=%s from=%s to=%s failures=%d cooldown=%.1fs",
            self.name,
            self._state.value,
            state.value,
            self._consecutive_failures,
            self._cooldown,
        )
        self._state = state
