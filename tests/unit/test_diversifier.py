from __future__ import annotations

from itertools import combinations

import pytest

from meridian.app.backends.contracts import BackendKind
from meridian.app.ranking.contracts import ScoredCandidate
from meridian.app.ranking.diversify import Diversifier, jaccard, shingles
from retrieval_fakes import make_candidate


def _scored(document_id: str, content: str, score: float = 0.5) -> ScoredCandidate:
    return ScoredCandidate(
        candidate=make_candidate(BackendKind.IN_MEMORY, document_id, 1.0, content),
        relevance_score=score,
        score_breakdown={},
    )


def test_near_duplicates_are_dropped_in_rank_order() -> None:
    ranked = [
        _scored("a", "home all axes then run the alignment routine", 0.9),
        _scored("b", "home all axes then run the alignment routine again", 0.8),
        _scored("c", "lubricate the linear bearings weekly", 0.7),
    ]

    accepted = Diversifier(threshold=0.8).diversify(ranked)

    assert [item.candidate.document_id for item in accepted] == ["a", "c"]


def test_no_accepted_pair_exceeds_threshold() -> None:
    texts = [
        "calibration steps for the gantry",
        "calibration steps for the gantry axis",
        "calibration steps gantry",
        "maintenance schedule for belts",
        "maintenance schedule for the belts",
        "api status endpoint reference",
    ]
    ranked = [_scored(str(index), text) for index, text in enumerate(texts)]
    diversifier = Diversifier(threshold=0.6)

    accepted = diversifier.diversify(ranked)

    for left, right in combinations(accepted, 2):
        similarity = jaccard(
            shingles(left.candidate.content), shingles(right.candidate.content)
        )
        assert similarity <= 0.6


def test_limit_stops_after_enough_candidates() -> None:
    ranked = [_scored(str(index), f"topic{index} detail{index}") for index in range(10)]

    accepted = Diversifier(threshold=0.9).diversify(ranked, limit=3)

    assert len(accepted) == 3


def test_bigram_shingles_are_configurable() -> None:
    assert shingles("a b c", size=2) == frozenset({("a", "b"), ("b", "c")})
    assert shingles("single", size=3) == frozenset({("single",)})


def test_empty_content_is_never_a_duplicate() -> None:
    ranked = [_scored("a", ""), _scored("b", "")]

    assert len(Diversifier().diversify(ranked)) == 2


def test_threshold_must_be_a_fraction() -> None:
    with pytest.raises(ValueError):
        Diversifier(threshold=1.5)
