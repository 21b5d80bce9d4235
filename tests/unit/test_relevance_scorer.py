from __future__ import annotations

import pytest

from meridian.app.backends.contracts import BackendKind
from meridian.app.orchestration.contracts import (
    ConversationTurn,
    Query,
    QueryContext,
    SearchFeatures,
)
from meridian.app.ranking.contracts import (
    SEMANTIC_MATCH,
    SIMILARITY,
    RelevanceWeights,
    ScoredCandidate,
    ranking_key,
)
from meridian.app.ranking.feedback import FeedbackStore
from meridian.app.ranking.scoring import (
    RelevanceScorer,
    extract_keywords,
    normalize_similarities,
)
from retrieval_fakes import ManualClock, make_candidate

DAY = 86400.0


def _query(text: str = "calibration steps", **kwargs) -> Query:
    return Query(text=text, sources=frozenset({BackendKind.IN_MEMORY}), **kwargs)


def test_default_weights_sum_to_one() -> None:
    assert sum(RelevanceWeights().as_dict().values()) == pytest.approx(1.0)


def test_disabled_factor_weight_is_redistributed_proportionally() -> None:
    effective = RelevanceWeights().effective(frozenset({SEMANTIC_MATCH}))

    assert SEMANTIC_MATCH not in effective
    assert sum(effective.values()) == pytest.approx(1.0)
    assert effective[SIMILARITY] == pytest.approx(0.30 / 0.95)


def test_all_zero_weights_fall_back_to_similarity() -> None:
    weights = RelevanceWeights(**{name: 0.0 for name in RelevanceWeights().as_dict()})

    assert weights.effective() == {SIMILARITY: 1.0}


def test_negative_weights_are_rejected() -> None:
    with pytest.raises(ValueError):
        RelevanceWeights(similarity=-0.1)
    with pytest.raises(ValueError):
        RelevanceWeights.from_overrides({"novelty": 0.5})


def test_similarity_is_min_max_normalised_per_backend() -> None:
    rows = [
        make_candidate(BackendKind.HOSTED_INDEX, "a", 0.2, "x"),
        make_candidate(BackendKind.HOSTED_INDEX, "b", 0.8, "x"),
        make_candidate(BackendKind.IN_MEMORY, "c", 0.4, "x"),
    ]

    assert normalize_similarities(rows) == [0.0, 1.0, 1.0]


def test_sigmoid_normalisation_can_be_selected_per_backend() -> None:
    rows = [make_candidate(BackendKind.RELATIONAL_VECTOR, "a", 0.0, "x")]

    values = normalize_similarities(rows, {BackendKind.RELATIONAL_VECTOR: "sigmoid"})

    assert values == [pytest.approx(0.5)]


def test_recency_decays_with_half_life(clock: ManualClock) -> None:
    scorer = RelevanceScorer(recency_half_life_days=180.0, clock=clock)
    fresh = make_candidate(BackendKind.IN_MEMORY, "a", 1.0, "x", updated_at=clock.now)
    old = make_candidate(
        BackendKind.IN_MEMORY, "b", 1.0, "x", created_at=clock.now - 180 * DAY
    )
    undated = make_candidate(BackendKind.IN_MEMORY, "c", 1.0, "x")

    assert scorer.recency(fresh) == pytest.approx(1.0)
    assert scorer.recency(old) == pytest.approx(0.5)
    assert scorer.recency(undated) == 0.5


def test_recency_reads_iso_timestamps() -> None:
    scorer = RelevanceScorer(clock=lambda: 1_700_000_000.0)
    row = make_candidate(
        BackendKind.IN_MEMORY, "a", 1.0, "x", updated_at="2023-11-14T22:13:20Z"
    )

    assert scorer.recency(row) == pytest.approx(1.0)


def test_authority_uses_explicit_score_or_trust_tier() -> None:
    scorer = RelevanceScorer()

    assert scorer.authority(
        make_candidate(BackendKind.IN_MEMORY, "a", 1.0, "x", authority=0.9)
    ) == pytest.approx(0.9)
    assert scorer.authority(
        make_candidate(BackendKind.IN_MEMORY, "b", 1.0, "x", trust_tier="official")
    ) == 1.0
    assert scorer.authority(make_candidate(BackendKind.IN_MEMORY, "c", 1.0, "x")) == 0.5


def test_context_relevance_rewards_domain_type_and_tags() -> None:
    scorer = RelevanceScorer()
    context = QueryContext(domain="troubleshooting", query_type="procedural")
    matching = make_candidate(
        BackendKind.IN_MEMORY,
        "a",
        1.0,
        "Step one: fix the error before you debug further.",
        tags=["troubleshooting"],
    )
    unrelated = make_candidate(BackendKind.IN_MEMORY, "b", 1.0, "Quarterly revenue.")

    assert scorer.context_relevance(unrelated, None) == 0.5
    assert scorer.context_relevance(unrelated, context) == 0.5
    assert scorer.context_relevance(matching, context) == 1.0


def test_conversation_boost_is_capped() -> None:
    scorer = RelevanceScorer()
    history = tuple(
        ConversationTurn(role="user", content="gantry encoder sensor offset cable")
        for _ in range(3)
    )
    context = QueryContext(conversation_history=history)
    row = make_candidate(
        BackendKind.IN_MEMORY, "a", 1.0, "gantry encoder sensor offset cable"
    )

    assert scorer.context_relevance(row, context) == pytest.approx(0.8)


def test_keyword_match_weights_long_terms_and_whole_words() -> None:
    scorer = RelevanceScorer()
    row = make_candidate(BackendKind.IN_MEMORY, "a", 1.0, "the calibration routine")

    assert extract_keywords("What are the calibration steps?") == [
        "calibration",
        "steps",
    ]
    assert scorer.keyword_match(row, "calibration steps") == pytest.approx(0.6)
    assert scorer.keyword_match(row, "the of") == 0.5


def test_semantic_match_uses_cross_encoder_when_given() -> None:
    scorer = RelevanceScorer(cross_encoder=lambda _query, _content: 0.7)
    row = make_candidate(BackendKind.IN_MEMORY, "a", 1.0, "anything")

    assert scorer.semantic_match(row, _query()) == pytest.approx(0.7)


def test_semantic_match_heuristic_uses_synonym_pairs() -> None:
    scorer = RelevanceScorer()
    row = make_candidate(BackendKind.IN_MEMORY, "a", 1.0, "setup instructions")

    assert scorer.semantic_match(row, _query("configure the robot")) == pytest.approx(
        0.2
    )


def test_user_feedback_defaults_to_neutral() -> None:
    feedback = FeedbackStore()
    feedback.record("liked", 5)
    scorer = RelevanceScorer(feedback=feedback)

    liked = make_candidate(BackendKind.IN_MEMORY, "liked", 1.0, "x")
    unseen = make_candidate(BackendKind.IN_MEMORY, "unseen", 1.0, "x")

    assert scorer.user_feedback(liked) == 1.0
    assert scorer.user_feedback(unseen) == 0.5


def test_scores_are_bounded_and_breakdown_is_reported() -> None:
    scorer = RelevanceScorer()
    rows = [
        make_candidate(BackendKind.IN_MEMORY, "a", 3.0, "calibration steps " * 5),
        make_candidate(BackendKind.IN_MEMORY, "b", -2.0, ""),
    ]

    scored = scorer.score_batch(rows, _query(context=QueryContext(domain="calibration")))

    for item in scored:
        assert 0.0 <= item.relevance_score <= 1.0
        assert SEMANTIC_MATCH not in item.score_breakdown
    assert scored[0].relevance_score > scored[1].relevance_score


def test_relevance_scoring_can_be_disabled() -> None:
    scorer = RelevanceScorer()
    rows = [
        make_candidate(BackendKind.IN_MEMORY, "a", 0.2, "x"),
        make_candidate(BackendKind.IN_MEMORY, "b", 0.6, "x"),
    ]

    scored = scorer.score_batch(
        rows, _query(features=SearchFeatures(enable_relevance_scoring=False))
    )

    assert [item.relevance_score for item in scored] == [0.0, 1.0]


def test_query_weight_overrides_take_precedence() -> None:
    scorer = RelevanceScorer()
    row = make_candidate(BackendKind.IN_MEMORY, "a", 1.0, "unrelated", authority=0.0)
    only_authority = RelevanceWeights.from_overrides(
        {name: 0.0 for name in RelevanceWeights().as_dict()} | {"authority": 1.0}
    )

    scored = scorer.score(row, _query(weights=only_authority), similarity=1.0)

    assert scored.relevance_score == 0.0


def test_ranking_key_breaks_ties_deterministically() -> None:
    def scored(document_id: str, similarity: float, recency: float) -> ScoredCandidate:
        return ScoredCandidate(
            candidate=make_candidate(BackendKind.IN_MEMORY, document_id, 1.0, "x"),
            relevance_score=0.5,
            score_breakdown={"similarity": similarity, "recency": recency},
        )

    rows = [
        scored("c", 0.5, 0.5),
        scored("b", 0.5, 0.5),
        scored("a", 0.5, 0.9),
        scored("d", 0.9, 0.1),
    ]

    assert [row.candidate.document_id for row in sorted(rows, key=ranking_key)] == [
        "d",
        "a",
        "b",
        "c",
    ]
