from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

MIN_RATING = 1
MAX_RATING = 5


@dataclass(frozen=True)
class FeedbackRecord:
    document_id: str
    rating: int
    query_id: str | None
    user_id: str | None
    recorded_at: float

    @property
    def ratio(self) -> float:
        return (self.rating - MIN_RATING) / (MAX_RATING - MIN_RATING)


class FeedbackStore:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, list[FeedbackRecord]] = {}

    def record(
        self,
        document_id: str,
        rating: int,
        *,
        query_id: str | None = None,
        user_id: str | None = None,
    ) -> FeedbackRecord:
        if not document_id.strip():
            raise ValueError("document_id is required")
        if isinstance(rating, bool) or not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"rating must be between {MIN_RATING} and {MAX_RATING}")
        entry = FeedbackRecord(
            document_id=document_id,
            rating=int(rating),
            query_id=query_id,
            user_id=user_id,
            recorded_at=self._clock(),
        )
        with self._lock:
            self._records.setdefault(document_id, []).append(entry)
        return entry

    def get_feedback_ratio(self, document_id: str) -> float | None:
        with self._lock:
            rows = list(self._records.get(document_id, ()))
        if not rows:
            return None
        return sum(row.ratio for row in rows) / len(rows)

    def count(self, document_id: str | None = None) -> int:
        with self._lock:
            if document_id is None:
                return sum(len(rows) for rows in self._records.values())
            return len(self._records.get(document_id, ()))
