from __future__ import annotations

import threading
import time
from typing import Callable, Iterable

from meridian.app.observability.contracts import (
    METRICS_STATUS_NO_DATA,
    METRICS_STATUS_OK,
    MetricEvent,
    MetricKind,
    MetricsSummary,
    ServiceMetrics,
    TimeRange,
)

ALL_BACKENDS = "all"


class MetricsStore:
    """Append-only per-backend event log aggregated on read.

    ``total_requests`` is derived as ``success + error`` so a snapshot can
    never report more outcomes than requests. Events older than the retention
    window are pruned lazily whenever the store is read.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = 30 * 86400.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._events: dict[str, list[MetricEvent]] = {}

    def now(self) -> float:
        return self._clock()

    def record(self, event: MetricEvent) -> None:
        with self._lock:
            self._events.setdefault(event.backend, []).append(event)

    def emit(
        self,
        backend: str,
        kind: MetricKind,
        *,
        value: float = 1.0,
        error_category: str | None = None,
    ) -> None:
        self.record(
            MetricEvent(
                backend=backend,
                kind=kind,
                timestamp=self._clock(),
                value=value,
                error_category=error_category,
            )
        )

    def backends(self) -> list[str]:
        with self._lock:
            return sorted(self._events)

    def snapshot(
        self,
        backend: str | None = None,
        time_range: TimeRange = TimeRange.DAY,
    ) -> ServiceMetrics:
        self.prune()
        since = self._clock() - time_range.seconds
        with self._lock:
            if backend is None or backend == ALL_BACKENDS:
                events = [
                    event for rows in self._events.values() for event in rows
                ]
            else:
                events = list(self._events.get(backend, []))
        name = backend or ALL_BACKENDS
        return _aggregate(name, [event for event in events if event.timestamp >= since])

    def summary(
        self,
        backends: Iterable[str],
        time_range: TimeRange = TimeRange.DAY,
    ) -> MetricsSummary:
        snapshots = [self.snapshot(name, time_range) for name in backends]
        return summarize(snapshots)

    def reset(self, backend: str | None = None) -> list[str]:
        with self._lock:
            if backend is None or backend == ALL_BACKENDS:
                cleared = sorted(self._events)
                self._events.clear()
                return cleared
            self._events.pop(backend, None)
            return [backend]

    def prune(self) -> int:
        cutoff = self._clock() - self._retention_seconds
        removed = 0
        with self._lock:
            for name, rows in list(self._events.items()):
                kept = [event for event in rows if event.timestamp >= cutoff]
                removed += len(rows) - len(kept)
                self._events[name] = kept
        return removed


def _aggregate(name: str, events: list[MetricEvent]) -> ServiceMetrics:
    if not events:
        return ServiceMetrics(name=name, status=METRICS_STATUS_NO_DATA)

    counts = {kind: 0 for kind in MetricKind}
    latencies: list[float] = []
    errors_by_category: dict[str, int] = {}
    for event in events:
        counts[event.kind] += 1
        if event.kind == MetricKind.LATENCY:
            latencies.append(event.value)
        if event.kind == MetricKind.ERROR:
            category = event.error_category or "unknown"
            errors_by_category[category] = errors_by_category.get(category, 0) + 1

    successful = counts[MetricKind.SUCCESS]
    failed = counts[MetricKind.ERROR]
    return ServiceMetrics(
        name=name,
        status=METRICS_STATUS_OK,
        total_requests=successful + failed,
        successful_requests=successful,
        failed_requests=failed,
        retried_requests=counts[MetricKind.RETRY],
        circuit_breaker_trips=counts[MetricKind.CIRCUIT_TRIP],
        fallback_activations=counts[MetricKind.FALLBACK],
        average_latency_ms=(sum(latencies) / len(latencies)) if latencies else 0.0,
        latency_samples=len(latencies),
        errors_by_category=errors_by_category,
        last_updated=max(event.timestamp for event in events),
    )


def summarize(snapshots: Iterable[ServiceMetrics]) -> MetricsSummary:
    total = 0
    successful = 0
    failed = 0
    retries = 0
    fallbacks = 0
    latency_total = 0.0
    latency_count = 0
    for metrics in snapshots:
        total += metrics.total_requests
        successful += metrics.successful_requests
        failed += metrics.failed_requests
        retries += metrics.retried_requests
        fallbacks += metrics.fallback_activations
        latency_total += metrics.average_latency_ms * metrics.latency_samples
        latency_count += metrics.latency_samples
    return MetricsSummary(
        total_requests=total,
        overall_success_rate=(successful / total) if total else 0.0,
        overall_error_rate=(failed / total) if total else 0.0,
        total_retries=retries,
        total_fallbacks=fallbacks,
        average_latency_ms=(latency_total / latency_count) if latency_count else 0.0,
    )
