from __future__ import annotations

import re
from typing import Sequence

from meridian.app.ranking.contracts import ScoredCandidate

WORD_PATTERN = re.compile(r"[a-z0-9_]+")


def shingles(text: str, size: int = 1) -> frozenset[tuple[str, ...]]:
    words = WORD_PATTERN.findall(text.lower())
    if size <= 1 or len(words) < size:
        return frozenset((word,) for word in words)
    return frozenset(
        tuple(words[index : index + size]) for index in range(len(words) - size + 1)
    )


def jaccard(left: frozenset[tuple[str, ...]], right: frozenset[tuple[str, ...]]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


class Diversifier:
    """Greedy near-duplicate filter over an already ranked list."""

    def __init__(self, threshold: float = 0.8, *, shingle_size: int = 1) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")
        self._threshold = threshold
        self._shingle_size = max(1, shingle_size)

    @property
    def threshold(self) -> float:
        return self._threshold

    def diversify(
        self,
        ranked: Sequence[ScoredCandidate],
        limit: int | None = None,
    ) -> list[ScoredCandidate]:
        accepted: list[ScoredCandidate] = []
        accepted_shingles: list[frozenset[tuple[str, ...]]] = []
        for item in ranked:
            if limit is not None and len(accepted) >= limit:
                break
            current = shingles(item.candidate.content, self._shingle_size)
            if any(
                jaccard(current, previous) > self._threshold
                for previous in accepted_shingles
            ):
                continue
            accepted.append(item)
            accepted_shingles.append(current)
        return accepted
