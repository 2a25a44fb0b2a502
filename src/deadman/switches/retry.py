"""Backoff policy for failed deliveries."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from deadman.config.models import RetryConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap and a retry budget.

    The first attempt plus `max_retries` retries are allowed; the failure
    numbered `max_retries + 1` exhausts the budget.
    """

    max_retries: int = 3
    base_delay: timedelta = timedelta(minutes=5)
    max_delay: timedelta = timedelta(hours=6)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay=timedelta(seconds=config.base_delay_seconds),
            max_delay=timedelta(seconds=config.max_delay_seconds),
        )

    def delay_for(self, failures: int) -> timedelta:
        """Delay before the retry that follows `failures` consecutive failures."""
        if failures < 1:
            raise ValueError("failures must be >= 1")
        return min(self.base_delay * (2 ** (failures - 1)), self.max_delay)

    def is_exhausted(self, failures: int) -> bool:
        return failures > self.max_retries

    def next_attempt_at(self, failures: int, now: datetime) -> datetime | None:
        """When to retry after `failures` failures, or None if the budget is spent."""
        if self.is_exhausted(failures):
            logger.debug(
                "retry_budget_exhausted",
                extra={"retry.failures": failures, "retry.max": self.max_retries},
            )
            return None
        return now + self.delay_for(failures)
