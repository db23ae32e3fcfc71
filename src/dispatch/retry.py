"""
Bounded retry policy for queued field actions.

Pure bookkeeping only: nothing here sleeps or schedules. The offline queue
asks the policy what a failure means for an entry, and the auto-sync runner
asks it how long to back off after a failing pass.
"""

from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_MAX_RETRIES = 3


class RetryDecision(BaseModel):
    retries: int
    exhausted: bool


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=60.0, ge=0.0)

    def record_failure(self, retries: int, max_retries: Optional[int] = None) -> RetryDecision:
        """
        Counts one more failed attempt.

        Args:
            retries: Attempts already failed before this one.
            max_retries: Per-entry limit; defaults to the policy's.

        Returns:
            The new retry count and whether the entry is now out of attempts.
        """
        limit = self.max_retries if max_retries is None else max_retries
        retries += 1
        return RetryDecision(retries=retries, exhausted=retries >= limit)

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff in seconds for the given 1-based attempt, capped at max_delay_seconds."""
        if attempt < 1:
            return 0.0
        delay = self.base_delay_seconds * self.multiplier ** (attempt - 1)
        return min(delay, self.max_delay_seconds)
