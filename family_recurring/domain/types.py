"""
family_recurring.domain.types -- Pure frozen dataclasses for recurring transactions.

ZERO I/O.  Frozen dataclasses with ``str`` enum status fields and frozensets
or tuples for immutable collections.  ORM models convert to and from these
types via ``to_dto()`` / ``from_dto()``.

Invariants enforced:
    - All DTOs are frozen; state changes produce new instances
      (``dataclasses.replace``).
    - ``RecurrenceRule.weekly_pattern`` uses 0=Sunday ... 6=Saturday.
    - ``VALID_TRANSITIONS`` is the single source of truth for the execution
      record lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Enums
# =============================================================================


class Frequency(str, Enum):
    """How often a recurring transaction repeats."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class TransactionType(str, Enum):
    """Direction of the materialized transaction."""

    INCOME = "income"
    EXPENSE = "expense"


class ExecutionStatus(str, Enum):
    """Lifecycle status of one attempted occurrence."""

    PENDING = "pending"  # Opened for a due date, not yet materialized
    COMPLETED = "completed"  # Transaction created
    FAILED = "failed"  # Retryable while next_retry_date is set
    SKIPPED = "skipped"  # Series deactivated before execution
    CANCELLED = "cancelled"  # Series removed by the user


class PassTrigger(str, Enum):
    """What started a scheduler pass."""

    SCHEDULED = "scheduled"  # External cron trigger or background tick
    MANUAL = "manual"  # "Process now"


VALID_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.SKIPPED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.FAILED: frozenset({
        ExecutionStatus.COMPLETED,  # Retry succeeded
        ExecutionStatus.FAILED,  # Retry failed again
        ExecutionStatus.CANCELLED,  # Series deleted
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.SKIPPED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}

# week_of_month value meaning "the last such weekday of the month"
LAST_WEEK_OF_MONTH = 5


# =============================================================================
# Rule DTOs
# =============================================================================


@dataclass(frozen=True)
class MonthlyPattern:
    """Monthly placement: a fixed day of month OR an Nth weekday.

    Exactly one mode must be set; ``validate_rule`` enforces it.
    """

    day_of_month: int | None = None  # 1-31, clamped to shorter months
    week_of_month: int | None = None  # 1-4, or 5 for the last one
    day_of_week: int | None = None  # 0=Sunday ... 6=Saturday

    @property
    def uses_day_of_month(self) -> bool:
        return self.day_of_month is not None

    @property
    def uses_week_of_month(self) -> bool:
        return self.week_of_month is not None or self.day_of_week is not None


@dataclass(frozen=True)
class RecurrenceRule:
    """Schedule and running state of one series.

    ``next_execution_date`` is the cursor: never before ``start_date``, never
    before ``last_execution_date`` and never moved backwards by a pass.
    """

    id: UUID
    frequency: Frequency
    interval_count: int
    start_date: date
    next_execution_date: date
    end_date: date | None = None
    max_occurrences: int | None = None
    weekly_pattern: frozenset[int] = field(default_factory=frozenset)
    monthly_pattern: MonthlyPattern | None = None
    last_execution_date: date | None = None
    execution_count: int = 0
    failed_execution_count: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class TransactionTemplate:
    """What each occurrence of a series materializes into."""

    family_id: UUID
    account_id: UUID
    description: str
    amount: Decimal
    transaction_type: TransactionType
    created_by: UUID
    category_id: UUID | None = None
    notes: str | None = None


@dataclass(frozen=True)
class RecurringTransaction:
    """A recurring transaction: its rule plus the template it materializes."""

    rule: RecurrenceRule
    template: TransactionTemplate
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def id(self) -> UUID:
        return self.rule.id


# =============================================================================
# Execution DTOs
# =============================================================================


@dataclass(frozen=True)
class ExecutionRecord:
    """Outcome of one attempted occurrence.

    At most one record exists per (``rule_id``, ``scheduled_date``).
    """

    id: UUID
    rule_id: UUID
    scheduled_date: date
    status: ExecutionStatus
    executed_date: date | None = None
    error_message: str | None = None
    error_code: str | None = None
    retry_count: int = 0
    next_retry_date: date | None = None
    transaction_id: UUID | None = None
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Completed, skipped, cancelled, or failed with no retry scheduled."""
        if self.status == ExecutionStatus.FAILED:
            return self.next_retry_date is None
        return not VALID_TRANSITIONS[self.status]

    @property
    def needs_review(self) -> bool:
        """Failed for good; kept for manual review."""
        return self.status == ExecutionStatus.FAILED and self.next_retry_date is None


# =============================================================================
# Pass / read-model DTOs
# =============================================================================


@dataclass(frozen=True)
class PassSummary:
    """Result of one scheduler pass.

    ``failed_count`` counts failed attempts plus rule-level aborts (invalid
    rule, safety cap).  Busy rules only add an error message.
    """

    pass_id: UUID
    as_of: date
    trigger: PassTrigger
    processed_count: int = 0
    failed_count: int = 0
    retried_count: int = 0  # Retry attempts made, successful or not
    skipped_count: int = 0
    error_messages: tuple[str, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    @property
    def has_failures(self) -> bool:
        return self.failed_count > 0

    def to_dict(self) -> dict[str, Any]:
        """The processed/failed/errors payload reported to callers."""
        return {
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "error_messages": list(self.error_messages),
        }


@dataclass(frozen=True)
class UpcomingOccurrence:
    """A series that comes due within the requested window."""

    rule_id: UUID
    description: str
    amount: Decimal
    transaction_type: TransactionType
    account_id: UUID
    frequency: Frequency
    next_execution_date: date
    days_until: int


@dataclass(frozen=True)
class RecurringSummary:
    """Per-family counts shown on the recurring transactions page."""

    family_id: UUID
    active_count: int
    total_count: int
    upcoming_count: int
