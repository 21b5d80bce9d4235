from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from meridian.app.backends.contracts import BackendKind
from meridian.app.ranking.contracts import RelevanceWeights, ScoredCandidate
from meridian.app.resilience.contracts import ErrorCategory

MAX_HISTORY_TURNS = 10
MAX_RESULTS_LIMIT = 50

BACKEND_NOT_CONFIGURED = "backend_not_configured"


class QueryComplexity(str, Enum):
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str


@dataclass(frozen=True)
class QueryContext:
    domain: str | None = None
    query_type: str | None = None
    complexity: QueryComplexity | None = None
    user_intent: str | None = None
    conversation_history: tuple[ConversationTurn, ...] = ()
    previous_queries: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "conversation_history",
            tuple(self.conversation_history)[-MAX_HISTORY_TURNS:],
        )
        object.__setattr__(
            self,
            "previous_queries",
            tuple(self.previous_queries)[-MAX_HISTORY_TURNS:],
        )


@dataclass(frozen=True)
class SearchFeatures:
    enable_relevance_scoring: bool = True
    enable_cross_encoder: bool = False
    enable_diversification: bool = True


@dataclass(frozen=True)
class Query:
    text: str
    sources: frozenset[BackendKind]
    max_results: int = 10
    threshold: float = 0.3
    context: QueryContext | None = None
    user_id: str | None = None
    weights: RelevanceWeights | None = None
    features: SearchFeatures = field(default_factory=SearchFeatures)

    def __post_init__(self) -> None:
        if not self.text.strip():
            raise ValueError("query text must not be empty")
        object.__setattr__(self, "sources", frozenset(self.sources))
        if not self.sources:
            raise ValueError("at least one source is required")
        if not 1 <= self.max_results <= MAX_RESULTS_LIMIT:
            raise ValueError(f"max_results must be between 1 and {MAX_RESULTS_LIMIT}")
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")


@dataclass(frozen=True)
class BackendStatus:
    backend: BackendKind
    ok: bool
    latency_ms: int = 0
    result_count: int = 0
    attempts: int = 0
    error: str | None = None
    error_category: ErrorCategory | None = None


@dataclass(frozen=True)
class SearchResponse:
    results: tuple[ScoredCandidate, ...]
    per_backend_status: Mapping[BackendKind, BackendStatus]
    from_cache: bool
    total_response_ms: int
    fingerprint: str
    features: SearchFeatures

    @property
    def degraded(self) -> bool:
        return any(not status.ok for status in self.per_backend_status.values())


class OrchestrationError(Exception):
    pass


class AllBackendsUnavailableError(OrchestrationError):
    def __init__(self, statuses: Mapping[BackendKind, BackendStatus]) -> None:
        self.statuses = dict(statuses)
        failed = ", ".join(
            f"{kind.value}={status.error or 'failed'}"
            for kind, status in sorted(self.statuses.items(), key=lambda row: row[0].value)
        )
        super().__init__(f"all backends unavailable: {failed or 'none requested'}")


class SearchTimeoutError(OrchestrationError):
    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"search exceeded {timeout_seconds:.1f}s")
