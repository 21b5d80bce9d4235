from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable

from meridian.app.resilience.contracts import (
    RETRYABLE_CATEGORIES,
    ErrorCategory,
    RetryDecision,
)


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    rate_limit_base_delay_seconds: float = 2.0
    max_delay_seconds: float = 10.0
    jitter_fraction: float = 0.1


class RetryPolicy:
    """Decides whether a failed backend attempt should be retried.

    ``attempt`` is the 1-based number of the attempt that just failed, so with
    ``max_attempts=3`` the adapter is called at most three times.
    """

    def __init__(
        self,
        settings: RetrySettings | None = None,
        *,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._settings = settings or RetrySettings()
        self._uniform = uniform

    @property
    def settings(self) -> RetrySettings:
        return self._settings

    @property
    def max_attempts(self) -> int:
        return max(self._settings.max_attempts, 1)

    def decide(self, attempt: int, category: ErrorCategory) -> RetryDecision:
        if category not in RETRYABLE_CATEGORIES:
            return RetryDecision(retry=False)
        if attempt >= self.max_attempts:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay_seconds=self.backoff(attempt, category))

    def backoff(self, attempt: int, category: ErrorCategory) -> float:
        settings = self._settings
        base = (
            settings.rate_limit_base_delay_seconds
            if category == ErrorCategory.RATE_LIMITED
            else settings.base_delay_seconds
        )
        exponential = base * (2 ** max(attempt - 1, 0))
        jitter = settings.jitter_fraction
        factor = 1.0 + (self._uniform(-jitter, jitter) if jitter > 0 else 0.0)
        return max(0.0, min(exponential * factor, settings.max_delay_seconds))
