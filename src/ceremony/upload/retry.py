"""Bounded exponential backoff for transient coordinator errors.

Only errors whose `retryable` flag is set (StorageUnavailable,
ConcurrencyConflict) are retried. After `max_attempts` tries the last
error is raised unchanged; every other error propagates on first sight.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ceremony.errors import CeremonyError


T = TypeVar("T")


@dataclass(frozen=True)
class RetryDecision:
    """What happened on one failed try."""
    attempt: int
    max_attempts: int
    retry: bool
    delay_seconds: float
    error: CeremonyError


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))

    def decide(self, attempt: int, error: CeremonyError) -> RetryDecision:
        retry = error.retryable and attempt < self.max_attempts
        return RetryDecision(
            attempt=attempt,
            max_attempts=self.max_attempts,
            retry=retry,
            delay_seconds=self.delay_for(attempt) if retry else 0.0,
            error=error,
        )

    def run(
        self,
        fn: Callable[[], T],
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[RetryDecision], None]] = None,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except CeremonyError as e:
                decision = self.decide(attempt, e)
                if not decision.retry:
                    raise
                if on_retry is not None:
                    on_retry(decision)
                sleep(decision.delay_seconds)
