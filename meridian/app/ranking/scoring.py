from __future__ import annotations

import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from meridian.app.backends.contracts import BackendKind, Candidate
from meridian.app.orchestration.contracts import Query, QueryContext
from meridian.app.ranking.contracts import (
    AUTHORITY,
    CONTEXT_RELEVANCE,
    KEYWORD_MATCH,
    RECENCY,
    SEMANTIC_MATCH,
    SIMILARITY,
    USER_FEEDBACK,
    FeedbackProvider,
    RelevanceWeights,
    ScoredCandidate,
)

NEUTRAL = 0.5
SECONDS_PER_DAY = 86400.0

STOP_WORDS = frozenset(
    {
        "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "from", "up", "about", "into", "through", "during", "before",
        "after", "above", "below", "between", "among", "is", "are", "was",
        "were", "be", "been", "being", "have", "has", "had", "do", "does",
        "did", "will", "would", "could", "should", "may", "might", "must",
        "can", "this", "that", "these", "those", "what", "how", "where",
        "when", "why", "who", "which",
    }
)

DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "automation": ("workflow", "trigger", "rule", "automation", "process", "schedule"),
    "integration": ("api", "webhook", "connection", "integration", "sync", "endpoint"),
    "configuration": ("config", "setting", "parameter", "option", "setup", "preference"),
    "security": ("auth", "permission", "security", "access", "token", "credential"),
    "api": ("endpoint", "request", "response", "method", "parameter", "authentication"),
    "troubleshooting": ("error", "issue", "problem", "fix", "debug", "troubleshoot"),
    "calibration": ("calibrat", "alignment", "offset", "tolerance", "measurement", "sensor"),
}

# (content markers, metadata document types) per query type
QUERY_TYPE_MARKERS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "troubleshooting": (("error", "problem", "fix", "troubleshoot"), ()),
    "api": (("api", "endpoint", "request"), ("api",)),
    "configuration": (("config", "setting", "setup"), ()),
    "procedural": (("step", "how to", "guide"), ("guide",)),
}

SEMANTIC_PAIRS = (
    ("configure", "setup"),
    ("install", "deployment"),
    ("error", "issue"),
    ("fix", "solution"),
    ("api", "endpoint"),
    ("authentication", "auth"),
    ("authorization", "permission"),
    ("monitoring", "observability"),
    ("workflow", "automation"),
    ("integration", "connection"),
    ("calibration", "alignment"),
)

TRUST_TIERS = {
    "official": 1.0,
    "verified": 0.8,
    "community": 0.5,
    "unverified": 0.3,
}

TIMESTAMP_KEYS = ("updated_at", "modified_at", "created_at", "timestamp")

CrossEncoder = Callable[[str, str], float]


def _clamp(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def extract_keywords(text: str) -> list[str]:
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    return [word for word in words if len(word) > 2 and word not in STOP_WORDS]


def _parse_timestamp(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return moment.timestamp()
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return _parse_timestamp(parsed)
    return None


def document_timestamp(metadata: Mapping[str, Any]) -> float | None:
    for key in TIMESTAMP_KEYS:
        parsed = _parse_timestamp(metadata.get(key))
        if parsed is not None:
            return parsed
    return None


def normalize_similarities(
    candidates: Sequence[Candidate],
    methods: Mapping[BackendKind, str] | None = None,
) -> list[float]:
    """Map raw backend scores onto [0, 1] per backend.

    Min-max by default; a backend mapped to ``"sigmoid"`` is squashed instead,
    for scores that are not bounded (e.g. inner products).
    """
    methods = methods or {}
    grouped: dict[BackendKind, list[float]] = {}
    for candidate in candidates:
        grouped.setdefault(candidate.backend, []).append(candidate.raw_score)
    bounds = {kind: (min(scores), max(scores)) for kind, scores in grouped.items()}

    normalized: list[float] = []
    for candidate in candidates:
        if methods.get(candidate.backend) == "sigmoid":
            normalized.append(_clamp(1.0 / (1.0 + math.exp(-candidate.raw_score))))
            continue
        minimum, maximum = bounds[candidate.backend]
        if maximum <= minimum:
            normalized.append(1.0)
        else:
            normalized.append(_clamp((candidate.raw_score - minimum) / (maximum - minimum)))
    return normalized


class RelevanceScorer:
    def __init__(
        self,
        weights: RelevanceWeights | None = None,
        *,
        feedback: FeedbackProvider | None = None,
        recency_half_life_days: float = 180.0,
        cross_encoder: CrossEncoder | None = None,
        normalization: Mapping[BackendKind, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if recency_half_life_days <= 0:
            raise ValueError("recency_half_life_days must be positive")
        self._weights = weights or RelevanceWeights()
        self._feedback = feedback
        self._half_life_days = recency_half_life_days
        self._cross_encoder = cross_encoder
        self._normalization = dict(normalization or {})
        self._clock = clock

    @property
    def weights(self) -> RelevanceWeights:
        return self._weights

    def score_batch(
        self,
        candidates: Sequence[Candidate],
        query: Query,
    ) -> list[ScoredCandidate]:
        similarities = normalize_similarities(candidates, self._normalization)
        return [
            self.score(candidate, query, similarity=similarity)
            for candidate, similarity in zip(candidates, similarities)
        ]

    def score(
        self,
        candidate: Candidate,
        query: Query,
        *,
        similarity: float | None = None,
    ) -> ScoredCandidate:
        if similarity is None:
            similarity = _clamp(candidate.raw_score)
        similarity = _clamp(similarity)
        features = query.features
        breakdown = {SIMILARITY: similarity, RECENCY: self.recency(candidate)}

        if not features.enable_relevance_scoring:
            return ScoredCandidate(
                candidate=candidate,
                relevance_score=round(similarity, 6),
                score_breakdown=breakdown,
            )

        breakdown[AUTHORITY] = self.authority(candidate)
        breakdown[CONTEXT_RELEVANCE] = self.context_relevance(candidate, query.context)
        breakdown[KEYWORD_MATCH] = self.keyword_match(candidate, query.text)
        breakdown[USER_FEEDBACK] = self.user_feedback(candidate)
        disabled: frozenset[str] = frozenset()
        if features.enable_cross_encoder:
            breakdown[SEMANTIC_MATCH] = self.semantic_match(candidate, query)
        else:
            disabled = frozenset({SEMANTIC_MATCH})

        weights = (query.weights or self._weights).effective(disabled)
        total = sum(weight * breakdown.get(name, 0.0) for name, weight in weights.items())
        return ScoredCandidate(
            candidate=candidate,
            relevance_score=round(_clamp(total), 6),
            score_breakdown={name: round(value, 6) for name, value in breakdown.items()},
        )

    def recency(self, candidate: Candidate) -> float:
        timestamp = document_timestamp(candidate.metadata)
        if timestamp is None:
            return NEUTRAL
        age_days = max(0.0, self._clock() - timestamp) / SECONDS_PER_DAY
        return _clamp(0.5 ** (age_days / self._half_life_days))

    def authority(self, candidate: Candidate) -> float:
        metadata = candidate.metadata
        explicit = metadata.get("authority")
        if isinstance(explicit, (int, float)) and not isinstance(explicit, bool):
            return _clamp(float(explicit))
        tier = metadata.get("trust_tier")
        if isinstance(tier, str):
            return TRUST_TIERS.get(tier.strip().lower(), NEUTRAL)
        return NEUTRAL

    def context_relevance(
        self,
        candidate: Candidate,
        context: QueryContext | None,
    ) -> float:
        if context is None:
            return NEUTRAL
        content = candidate.content.lower()
        score = NEUTRAL

        if context.domain:
            for keyword in DOMAIN_KEYWORDS.get(context.domain.lower(), ()):
                if keyword in content:
                    score += 0.1

        if context.query_type:
            markers, document_types = QUERY_TYPE_MARKERS.get(
                context.query_type.lower(), ((), ())
            )
            document_type = candidate.metadata.get("document_type")
            if any(marker in content for marker in markers) or (
                isinstance(document_type, str) and document_type.lower() in document_types
            ):
                score += 0.2

        score += self._conversation_boost(content, context)
        score += self._tag_overlap(candidate.metadata, context)
        return _clamp(score)

    def _conversation_boost(self, content: str, context: QueryContext) -> float:
        user_turns = [
            turn.content for turn in context.conversation_history if turn.role == "user"
        ][-3:]
        boost = 0.0
        for message in user_turns:
            for keyword in extract_keywords(message):
                if keyword in content:
                    boost += 0.05
        return min(0.3, boost)

    def _tag_overlap(self, metadata: Mapping[str, Any], context: QueryContext) -> float:
        tags = metadata.get("tags")
        if not isinstance(tags, (list, tuple)):
            return 0.0
        document_tags = {tag.strip().lower() for tag in tags if isinstance(tag, str)}
        context_tags = {
            value.strip().lower()
            for value in (context.domain, context.user_intent, context.query_type)
            if value
        }
        return 0.1 * len(document_tags & context_tags)

    def keyword_match(self, candidate: Candidate, text: str) -> float:
        keywords = extract_keywords(text)
        if not keywords:
            return NEUTRAL
        content = candidate.content.lower()
        matched = 0.0
        total_importance = 0.0
        for keyword in keywords:
            importance = 1.0 if len(keyword) > 3 else 0.5
            total_importance += importance
            if keyword not in content:
                continue
            if re.search(rf"\b{re.escape(keyword)}\b", content):
                matched += importance * 1.2
            else:
                matched += importance
        return _clamp(matched / total_importance)

    def semantic_match(self, candidate: Candidate, query: Query) -> float:
        if self._cross_encoder is not None:
            return _clamp(float(self._cross_encoder(query.text, candidate.content)))
        content = candidate.content.lower()
        text = query.text.lower()
        score = 0.0
        for left, right in SEMANTIC_PAIRS:
            if (left in text and right in content) or (right in text and left in content):
                score += 0.2
        if query.context and query.context.domain:
            for keyword in DOMAIN_KEYWORDS.get(query.context.domain.lower(), ()):
                if keyword in content:
                    score += 0.1
        return _clamp(score)

    def user_feedback(self, candidate: Candidate) -> float:
        if self._feedback is None:
            return NEUTRAL
        ratio = self._feedback.get_feedback_ratio(candidate.document_id)
        if ratio is None:
            return NEUTRAL
        return _clamp(ratio)
