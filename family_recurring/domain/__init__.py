"""Pure recurrence domain: types, date advancement, exhaustion and retry policy."""

from family_recurring.domain.advancer import (
    first_occurrence,
    iter_occurrences,
    next_occurrence,
    occurrence_on_or_after,
    validate_rule,
    weekday_index,
)
from family_recurring.domain.guard import exhaustion_reason, is_due, is_exhausted
from family_recurring.domain.retry import RetryPolicy
from family_recurring.domain.types import (
    LAST_WEEK_OF_MONTH,
    VALID_TRANSITIONS,
    ExecutionRecord,
    ExecutionStatus,
    Frequency,
    MonthlyPattern,
    PassSummary,
    PassTrigger,
    RecurrenceRule,
    RecurringSummary,
    RecurringTransaction,
    TransactionTemplate,
    TransactionType,
    UpcomingOccurrence,
)

__all__ = [
    "LAST_WEEK_OF_MONTH",
    "VALID_TRANSITIONS",
    "ExecutionRecord",
    "ExecutionStatus",
    "Frequency",
    "MonthlyPattern",
    "PassSummary",
    "PassTrigger",
    "RecurrenceRule",
    "RecurringSummary",
    "RecurringTransaction",
    "RetryPolicy",
    "TransactionTemplate",
    "TransactionType",
    "UpcomingOccurrence",
    "exhaustion_reason",
    "first_occurrence",
    "is_due",
    "is_exhausted",
    "iter_occurrences",
    "next_occurrence",
    "occurrence_on_or_after",
    "validate_rule",
    "weekday_index",
]
