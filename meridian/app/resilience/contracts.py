from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from meridian.app.backends.contracts import BackendKind, Candidate


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    TIMEOUT = "timeout"


RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMITED, ErrorCategory.TIMEOUT}
)


class BackendError(Exception):
    def __init__(self, category: ErrorCategory, message: str) -> None:
        super().__init__(message)
        self.category = category
        self.message = message


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class CircuitSnapshot:
    backend: str
    state: CircuitState
    consecutive_failures: int
    opened_at: float | None
    last_failure_category: ErrorCategory | None
    cooldown_seconds: float
    probe_in_flight: bool = False


@dataclass(frozen=True)
class InvocationResult:
    backend: BackendKind
    ok: bool
    candidates: tuple[Candidate, ...] = tuple()
    latency_ms: int = 0
    attempts: int = 0
    error_category: ErrorCategory | None = None
    error_message: str | None = None
    circuit_state: CircuitState = CircuitState.CLOSED
