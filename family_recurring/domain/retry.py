"""
Retry backoff for failed occurrences.

Contract:
    Backoff is counted in scheduler passes and converted to calendar days
    with ``pass_interval_days``.  Pure: the caller passes ``as_of``.

    retry_count  1   2   3   4 ...
    passes       b   b*m b*m^2 ... capped at max_backoff_passes

A failure is terminal (no ``next_retry_date``) once ``retry_count`` reaches
``max_retries`` or when the failure is permanent.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from family_config.schema import SchedulerConfig


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and backoff shape."""

    max_retries: int = 3
    backoff_base_passes: int = 1
    backoff_multiplier: int = 2
    max_backoff_passes: int = 16
    pass_interval_days: int = 1

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> RetryPolicy:
        return cls(
            max_retries=config.retry.max_retries,
            backoff_base_passes=config.retry.backoff_base_passes,
            backoff_multiplier=config.retry.backoff_multiplier,
            max_backoff_passes=config.retry.max_backoff_passes,
            pass_interval_days=config.pass_interval_days,
        )

    def backoff_passes(self, retry_count: int) -> int:
        """Passes to wait after the ``retry_count``-th failure (1-based)."""
        exponent = max(retry_count - 1, 0)
        passes = self.backoff_base_passes * self.backoff_multiplier ** exponent
        return min(passes, self.max_backoff_passes)

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def next_retry_date(
        self,
        retry_count: int,
        as_of: date,
        permanent: bool = False,
    ) -> date | None:
        """Date of the next attempt, or None when the failure is terminal."""
        if permanent or not self.can_retry(retry_count):
            return None
        days = self.backoff_passes(retry_count) * self.pass_interval_days
        return as_of + timedelta(days=days)
