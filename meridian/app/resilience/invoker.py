from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from meridian.app.backends.contracts import (
    BackendAdapter,
    BackendKind,
    BackendRequest,
    Candidate,
)
from meridian.app.observability.contracts import MetricKind
from meridian.app.observability.metrics import MetricsStore
from meridian.app.resilience.circuit import CircuitBreaker, CircuitSettings
from meridian.app.resilience.classifier import classify_error, describe_error
from meridian.app.resilience.contracts import (
    BackendError,
    CircuitSnapshot,
    ErrorCategory,
    InvocationResult,
)
from meridian.app.resilience.retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ResilientInvoker:
    """Runs one backend search behind its circuit breaker and retry policy.

    ``invoke`` never raises for backend failures; callers always get an
    ``InvocationResult`` so a failing backend cannot abort the whole search.
    """

    def __init__(
        self,
        *,
        metrics: MetricsStore,
        retry_policy: RetryPolicy | None = None,
        circuit_settings: CircuitSettings | None = None,
        fallback_enabled: bool = True,
        sleep: Sleep = asyncio.sleep,
        breaker_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._metrics = metrics
        self._retry_policy = retry_policy or RetryPolicy()
        self._circuit_settings = circuit_settings or CircuitSettings()
        self._fallback_enabled = fallback_enabled
        self._sleep = sleep
        self._breaker_clock = breaker_clock
        self._breakers: dict[BackendKind, CircuitBreaker] = {}

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def register(self, kind: BackendKind) -> CircuitBreaker:
        breaker = self._breakers.get(kind)
        if breaker is None:
            breaker = CircuitBreaker(
                kind.value,
                self._circuit_settings,
                clock=self._breaker_clock,
            )
            self._breakers[kind] = breaker
        return breaker

    def breaker(self, kind: BackendKind) -> CircuitBreaker:
        return self._breakers[kind]

    def circuit_snapshots(self) -> dict[BackendKind, CircuitSnapshot]:
        return {kind: breaker.snapshot() for kind, breaker in self._breakers.items()}

    async def invoke(
        self,
        adapter: BackendAdapter,
        request: BackendRequest,
    ) -> InvocationResult:
        kind = adapter.kind
        name = kind.value
        breaker = self.register(kind)

        admission = await breaker.acquire()
        if not admission.allowed:
            self._metrics.emit(name, MetricKind.CIRCUIT_TRIP)
            self._metrics.emit(
                name,
                MetricKind.ERROR,
                error_category=ErrorCategory.CIRCUIT_OPEN.value,
            )
            self._emit_fallback(name)
            return InvocationResult(
                backend=kind,
                ok=False,
                error_category=ErrorCategory.CIRCUIT_OPEN,
                error_message=f"circuit open for backend {name}",
                circuit_state=breaker.state,
            )

        started = time.perf_counter()
        attempt = 0
        try:
            while True:
                attempt += 1
                try:
                    candidates = await adapter.search(request)
                except Exception as exc:  # noqa: BLE001
                    category = classify_error(exc)
                    decision = self._retry_policy.decide(attempt, category)
                    LOGGER.warning(
                        "backend_attempt_failed backend=%s attempt=%d category=%s retry=%s",
                        name,
                        attempt,
                        category.value,
                        decision.retry,
                        exc_info=exc,
                    )
                    if decision.retry:
                        self._metrics.emit(name, MetricKind.RETRY)
                        await self._sleep(decision.delay_seconds)
                        continue
                    return await self._fail(
                        breaker=breaker,
                        kind=kind,
                        category=category,
                        message=describe_error(exc),
                        attempts=attempt,
                        started=started,
                        is_probe=admission.is_probe,
                    )
                else:
                    validated = _validate_candidates(kind, candidates)
                    await breaker.record_success()
                    latency_ms = self._record_latency(name, started)
                    self._metrics.emit(name, MetricKind.SUCCESS)
                    return InvocationResult(
                        backend=kind,
                        ok=True,
                        candidates=validated,
                        latency_ms=latency_ms,
                        attempts=attempt,
                        circuit_state=breaker.state,
                    )
        except asyncio.CancelledError:
            # covers both the adapter call and the backoff sleep
            self._record_latency(name, started)
            self._metrics.emit(
                name,
                MetricKind.ERROR,
                error_category=ErrorCategory.TRANSIENT.value,
            )
            if admission.is_probe:
                await breaker.release_probe()
            raise
        except BackendError as exc:
            return await self._fail(
                breaker=breaker,
                kind=kind,
                category=exc.category,
                message=exc.message,
                attempts=attempt,
                started=started,
                is_probe=admission.is_probe,
            )

    async def _fail(
        self,
        *,
        breaker: CircuitBreaker,
        kind: BackendKind,
        category: ErrorCategory,
        message: str,
        attempts: int,
        started: float,
        is_probe: bool,
    ) -> InvocationResult:
        name = kind.value
        if category == ErrorCategory.PERMANENT:
            if is_probe:
                await breaker.release_probe()
        else:
            opened = await breaker.record_failure(category)
            if opened:
                self._metrics.emit(name, MetricKind.CIRCUIT_TRIP)
            self._emit_fallback(name)
        latency_ms = self._record_latency(name, started)
        self._metrics.emit(name, MetricKind.ERROR, error_category=category.value)
        return InvocationResult(
            backend=kind,
            ok=False,
            latency_ms=latency_ms,
            attempts=attempts,
            error_category=category,
            error_message=message,
            circuit_state=breaker.state,
        )

    def _emit_fallback(self, name: str) -> None:
        if self._fallback_enabled:
            self._metrics.emit(name, MetricKind.FALLBACK)

    def _record_latency(self, name: str, started: float) -> int:
        latency_ms = max(int((time.perf_counter() - started) * 1000), 0)
        self._metrics.emit(name, MetricKind.LATENCY, value=float(latency_ms))
        return latency_ms


def _validate_candidates(kind: BackendKind, rows: object) -> tuple[Candidate, ...]:
    if not isinstance(rows, (list, tuple)):
        raise BackendError(
            ErrorCategory.PERMANENT,
            f"backend {kind.value} returned {type(rows).__name__}, expected a list",
        )
    validated: list[Candidate] = []
    for row in rows:
        if not isinstance(row, Candidate):
            raise BackendError(
                ErrorCategory.PERMANENT,
                f"backend {kind.value} returned a malformed candidate",
            )
        if row.backend != kind:
            raise BackendError(
                ErrorCategory.PERMANENT,
                f"backend {kind.value} returned a candidate tagged {row.backend.value}",
            )
        validated.append(row)
    return tuple(validated)
