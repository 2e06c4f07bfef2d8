"""
Retry/backoff policy for platform delivery failures.

The n-th automatic retry of a queue item waits
``min(base_delay * 2 ** (n - 1), max_delay)`` seconds, where ``n`` is the
item's ``retry_count`` after the increment. With the defaults (30 s base,
1 h cap) the waits are 30 s, 60 s, 120 s, ... up to 3600 s.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from social_publisher.config import Settings
from social_publisher.exceptions import PublishError, PublishFailureKind
from social_publisher.utils import backoff_delay


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a queue item after a failed delivery attempt."""

    retry: bool
    retry_count: int
    next_retry_at: Optional[datetime]
    reason: str
    kind: PublishFailureKind


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def delay_for(self, retry_count: int) -> timedelta:
        """Backoff before the retry numbered *retry_count* (1-based)."""
        return timedelta(
            seconds=backoff_delay(self.base_delay_seconds, retry_count, self.max_delay_seconds)
        )

    def decide(
        self,
        error: PublishError,
        retry_count: int,
        max_retries: int,
        now: datetime,
    ) -> RetryDecision:
        """
        Classify a failure against the item's remaining retry budget.

        Args:
            error: The classified failure.
            retry_count: Retries already consumed by the item.
            max_retries: The item's retry budget.
            now: Failure time; the backoff deadline is relative to it.
        """
        if error.retryable and retry_count < max_retries:
            new_count = retry_count + 1
            return RetryDecision(
                retry=True,
                retry_count=new_count,
                next_retry_at=now + self.delay_for(new_count),
                reason=error.reason,
                kind=error.kind,
            )
        reason = error.reason
        if error.retryable:
            reason = f"{reason} (gave up after {retry_count} retries)"
        return RetryDecision(
            retry=False,
            retry_count=retry_count,
            next_retry_at=None,
            reason=reason,
            kind=error.kind,
        )


__all__ = ["RetryDecision", "RetryPolicy"]
