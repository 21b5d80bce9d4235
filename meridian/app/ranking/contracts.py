from __future__ import annotations

from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Mapping, Protocol

from meridian.app.backends.contracts import Candidate

SIMILARITY = "similarity"
RECENCY = "recency"
AUTHORITY = "authority"
CONTEXT_RELEVANCE = "context_relevance"
KEYWORD_MATCH = "keyword_match"
SEMANTIC_MATCH = "semantic_match"
USER_FEEDBACK = "user_feedback"

FACTOR_NAMES = (
    SIMILARITY,
    RECENCY,
    AUTHORITY,
    CONTEXT_RELEVANCE,
    KEYWORD_MATCH,
    SEMANTIC_MATCH,
    USER_FEEDBACK,
)


@dataclass(frozen=True)
class RelevanceWeights:
    similarity: float = 0.30
    recency: float = 0.15
    authority: float = 0.20
    context_relevance: float = 0.15
    keyword_match: float = 0.10
    semantic_match: float = 0.05
    user_feedback: float = 0.05

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"weight {item.name} must be a number")
            if value < 0:
                raise ValueError(f"weight {item.name} must be non-negative")
            object.__setattr__(self, item.name, float(value))

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, float] | None) -> RelevanceWeights:
        if not overrides:
            return cls()
        unknown = sorted(set(overrides) - set(FACTOR_NAMES))
        if unknown:
            raise ValueError(f"unknown relevance factors: {', '.join(unknown)}")
        return cls(**{name: overrides[name] for name in overrides})

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in FACTOR_NAMES}

    def effective(self, disabled: frozenset[str] = frozenset()) -> dict[str, float]:
        """Weights with ``disabled`` factors removed, rescaled to sum to 1.0.

        When nothing positive remains the similarity factor carries the whole
        score.
        """
        active = {
            name: weight
            for name, weight in self.as_dict().items()
            if name not in disabled
        }
        total = sum(active.values())
        if total <= 0:
            return {SIMILARITY: 1.0}
        return {name: weight / total for name, weight in active.items() if weight > 0}


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    relevance_score: float
    score_breakdown: Mapping[str, float]

    def __post_init__(self) -> None:
        if not 0.0 <= self.relevance_score <= 1.0:
            raise ValueError("relevance_score must be within [0, 1]")
        object.__setattr__(
            self, "score_breakdown", MappingProxyType(dict(self.score_breakdown))
        )

    @property
    def similarity(self) -> float:
        return self.score_breakdown.get(SIMILARITY, 0.0)

    @property
    def recency(self) -> float:
        return self.score_breakdown.get(RECENCY, 0.5)


class FeedbackProvider(Protocol):
    def get_feedback_ratio(self, document_id: str) -> float | None: ...


def ranking_key(item: ScoredCandidate) -> tuple[float, float, float, str]:
    return (
        -item.relevance_score,
        -item.similarity,
        -item.recency,
        item.candidate.document_id,
    )
