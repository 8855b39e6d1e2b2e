"""
Series exhaustion checks.

Pure and idempotent.  ``is_exhausted`` is monotonic in the cursor: once a
series is exhausted, moving ``next_execution_date`` forward or completing
more occurrences never makes it live again.
"""

from __future__ import annotations

from datetime import date

from family_recurring.domain.types import RecurrenceRule

END_DATE_REACHED = "end_date_reached"
MAX_OCCURRENCES_REACHED = "max_occurrences_reached"


def exhaustion_reason(rule: RecurrenceRule) -> str | None:
    """Why the series has ended, or None while it is still live."""
    if rule.max_occurrences is not None and rule.execution_count >= rule.max_occurrences:
        return MAX_OCCURRENCES_REACHED
    if rule.end_date is not None and rule.next_execution_date > rule.end_date:
        return END_DATE_REACHED
    return None


def is_exhausted(rule: RecurrenceRule) -> bool:
    return exhaustion_reason(rule) is not None


def is_due(rule: RecurrenceRule, as_of: date) -> bool:
    """Active, cursor on or before ``as_of`` and not exhausted."""
    return (
        rule.is_active
        and rule.next_execution_date <= as_of
        and not is_exhausted(rule)
    )
