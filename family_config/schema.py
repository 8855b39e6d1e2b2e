"""
Scheduler configuration schema (``family_config.schema``).

Frozen dataclasses describing the tunable knobs of the recurring engine.
Defaults match ``defaults/scheduler.yaml`` so a missing key falls back to
the documented value.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class RetryPolicyDef:
    """Retry policy for failed occurrences, measured in scheduler passes."""

    max_retries: int = 3
    backoff_base_passes: int = 1
    backoff_multiplier: int = 2
    max_backoff_passes: int = 16


@dataclass(frozen=True)
class SchedulerConfig:
    """Complete scheduler configuration.

    ``pass_interval_days`` converts backoff passes into a ``next_retry_date``;
    it should match how often the external trigger runs passes.
    """

    retry: RetryPolicyDef = field(default_factory=RetryPolicyDef)
    pass_interval_days: int = 1
    max_iterations_per_rule: int = 1000
    materialization_timeout_seconds: float = 30.0
    tick_interval_seconds: int = 3600
    max_workers: int = 1
    upcoming_days_ahead: int = 30
    event_queue_size: int = 1000  # Undelivered events held before dropping
    source: str | None = None  # Path the values were loaded from
