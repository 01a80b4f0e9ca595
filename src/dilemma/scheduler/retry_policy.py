"""
Retry Policy for Job Scheduler.

Decides whether a failed job runs again and after how long:
- Automatic retry while attempts < max_attempts (default 3)
- Exponential backoff: delay = base_delay * 2^(attempts - 1), capped
- Optional jitter (off by default)

What RetryPolicy MUST NOT do:
- Touch the job store
- Execute jobs
- Keep state between calls
"""

import random
from dataclasses import dataclass
from typing import Optional

from .entities import DEFAULT_MAX_ATTEMPTS


DEFAULT_BASE_DELAY_SECONDS = 2.0
DEFAULT_MAX_DELAY_SECONDS = 60.0


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry evaluation: retry after `delay_seconds`, or give up."""

    retry: bool
    delay_seconds: float = 0.0

    @classmethod
    def retry_after(cls, delay_seconds: float) -> "RetryDecision":
        return cls(retry=True, delay_seconds=delay_seconds)

    @classmethod
    def give_up(cls) -> "RetryDecision":
        return cls(retry=False)


class RetryPolicy:
    """
    Exponential backoff with a maximum attempt count.

    Backoff with the defaults (2s base):
        attempt 1 failed -> retry in 2s
        attempt 2 failed -> retry in 4s
        attempt 3 failed -> FAILED (terminal)
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: Optional[float] = DEFAULT_MAX_DELAY_SECONDS,
        jitter_ratio: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize RetryPolicy.

        Args:
            max_attempts: Default attempt budget for jobs that don't carry one
            base_delay_seconds: Delay after the first failed attempt
            max_delay_seconds: Upper bound on any single delay (None = unbounded)
            jitter_ratio: Fraction of the delay added at random (0 disables)
            rng: Random source for jitter (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")

        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    def backoff_for(self, attempts: int) -> float:
        """
        Calculate the delay before the next attempt.

        Formula: delay = base_delay * 2^(attempts - 1), capped at max_delay

        Args:
            attempts: Attempts made so far (1 after the first failure)
        """
        exponent = max(attempts - 1, 0)
        delay = self.base_delay_seconds * (2 ** exponent)

        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)

        if self.jitter_ratio > 0:
            delay += self._rng.uniform(0, delay * self.jitter_ratio)

        return delay

    def decide(self, attempts: int, max_attempts: Optional[int] = None) -> RetryDecision:
        """
        Decide what happens after a failed attempt.

        Args:
            attempts: Attempts made so far, including the one that just failed
            max_attempts: The job's own budget (defaults to the policy's)

        Returns:
            RetryDecision.retry_after(delay) or RetryDecision.give_up()
        """
        limit = max_attempts if max_attempts is not None else self.max_attempts

        if attempts >= limit:
            return RetryDecision.give_up()

        return RetryDecision.retry_after(self.backoff_for(attempts))
