from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class MetricKind(str, Enum):
    LATENCY = "latency"
    SUCCESS = "success"
    ERROR = "error"
    RETRY = "retry"
    CIRCUIT_TRIP = "circuit_trip"
    FALLBACK = "fallback"


class TimeRange(str, Enum):
    HOUR = "1h"
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def seconds(self) -> float:
        return {
            TimeRange.HOUR: 3600.0,
            TimeRange.DAY: 86400.0,
            TimeRange.WEEK: 7 * 86400.0,
            TimeRange.MONTH: 30 * 86400.0,
        }[self]


METRICS_STATUS_OK = "ok"
METRICS_STATUS_NO_DATA = "no_data"
METRICS_STATUS_UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class MetricEvent:
    backend: str
    kind: MetricKind
    timestamp: float
    value: float = 1.0
    error_category: str | None = None


@dataclass(frozen=True)
class ServiceMetrics:
    name: str
    status: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    circuit_breaker_trips: int = 0
    fallback_activations: int = 0
    average_latency_ms: float = 0.0
    latency_samples: int = 0
    errors_by_category: dict[str, int] = field(default_factory=dict)
    last_updated: float | None = None
    error_message: str | None = None

    @property
    def success_rate(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return self.successful_requests / self.total_requests

    @property
    def error_rate(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return self.failed_requests / self.total_requests


@dataclass(frozen=True)
class MetricsSummary:
    total_requests: int
    overall_success_rate: float
    overall_error_rate: float
    total_retries: int
    total_fallbacks: int
    average_latency_ms: float
