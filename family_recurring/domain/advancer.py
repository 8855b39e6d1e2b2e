"""
Pure date advancement for recurrence rules.

Contract:
    ``next_occurrence(rule, after_date)`` and ``first_occurrence(rule)`` are
    PURE -- no I/O, no clock reads, no mutation of the rule.  The caller
    supplies every date.

Architecture: family_recurring/domain.  ZERO I/O.

Weekday indices follow the stored convention 0=Sunday ... 6=Saturday and
weeks run Sunday through Saturday.  Month arithmetic uses
``dateutil.relativedelta``, which clamps to the end of shorter months.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterator
from datetime import date, timedelta

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from family_kernel.exceptions import InvalidRuleError
from family_recurring.domain.types import (
    LAST_WEEK_OF_MONTH,
    Frequency,
    MonthlyPattern,
    RecurrenceRule,
)


# =============================================================================
# Helpers
# =============================================================================


# dateutil weekday constants indexed 0=Sunday
_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)


def weekday_index(day: date) -> int:
    """Weekday of ``day`` as 0=Sunday ... 6=Saturday."""
    return (day.weekday() + 1) % 7


def _clamp_day(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def _nth_weekday(year: int, month: int, week_of_month: int, day_of_week: int) -> date:
    """Nth ``day_of_week`` of the month; week 5 is the last one."""
    wd = _WEEKDAYS[day_of_week]
    if week_of_month == LAST_WEEK_OF_MONTH:
        return date(year, month, 1) + relativedelta(day=31, weekday=wd(-1))
    return date(year, month, 1) + relativedelta(weekday=wd(+week_of_month))


def _monthly_slot(pattern: MonthlyPattern, year: int, month: int) -> date:
    if pattern.uses_day_of_month:
        return _clamp_day(year, month, pattern.day_of_month)
    return _nth_weekday(year, month, pattern.week_of_month, pattern.day_of_week)


def _quarterly_day(rule: RecurrenceRule) -> int:
    pattern = rule.monthly_pattern
    if pattern is not None and pattern.day_of_month is not None:
        return pattern.day_of_month
    return rule.start_date.day


# =============================================================================
# Validation
# =============================================================================


def _validate_monthly_pattern(rule: RecurrenceRule, pattern: MonthlyPattern) -> None:
    if pattern.uses_day_of_month and pattern.uses_week_of_month:
        raise InvalidRuleError(
            str(rule.id), "monthly pattern sets both day_of_month and week_of_month"
        )
    if pattern.uses_day_of_month:
        if not 1 <= pattern.day_of_month <= 31:
            raise InvalidRuleError(
                str(rule.id), f"day_of_month must be 1-31, got {pattern.day_of_month}"
            )
        return
    if pattern.week_of_month is None or pattern.day_of_week is None:
        raise InvalidRuleError(
            str(rule.id), "week_of_month and day_of_week must be set together"
        )
    if not 1 <= pattern.week_of_month <= LAST_WEEK_OF_MONTH:
        raise InvalidRuleError(
            str(rule.id), f"week_of_month must be 1-5, got {pattern.week_of_month}"
        )
    if not 0 <= pattern.day_of_week <= 6:
        raise InvalidRuleError(
            str(rule.id), f"day_of_week must be 0-6, got {pattern.day_of_week}"
        )


def validate_rule(rule: RecurrenceRule) -> None:
    """Check that ``rule`` can be advanced.

    Raises:
        InvalidRuleError: non-positive interval or occurrence cap, end date
            before start date, or a missing, ambiguous or out-of-range
            pattern.
    """
    if rule.interval_count < 1:
        raise InvalidRuleError(
            str(rule.id), f"interval_count must be >= 1, got {rule.interval_count}"
        )
    if rule.max_occurrences is not None and rule.max_occurrences < 1:
        raise InvalidRuleError(
            str(rule.id), f"max_occurrences must be >= 1, got {rule.max_occurrences}"
        )
    if rule.end_date is not None and rule.end_date < rule.start_date:
        raise InvalidRuleError(str(rule.id), "end_date precedes start_date")

    if rule.frequency == Frequency.WEEKLY:
        bad = sorted(d for d in rule.weekly_pattern if not 0 <= d <= 6)
        if bad:
            raise InvalidRuleError(str(rule.id), f"weekday indices must be 0-6, got {bad}")

    elif rule.frequency == Frequency.MONTHLY:
        pattern = rule.monthly_pattern
        if pattern is None or not (pattern.uses_day_of_month or pattern.uses_week_of_month):
            raise InvalidRuleError(
                str(rule.id), "monthly rule needs day_of_month or week_of_month"
            )
        _validate_monthly_pattern(rule, pattern)

    elif rule.frequency == Frequency.QUARTERLY and rule.monthly_pattern is not None:
        pattern = rule.monthly_pattern
        if pattern.uses_week_of_month:
            raise InvalidRuleError(
                str(rule.id), "quarterly rules only support day_of_month"
            )
        if pattern.day_of_month is not None:
            _validate_monthly_pattern(rule, pattern)


# =============================================================================
# Advancement
# =============================================================================


def _week_start(day: date) -> date:
    """Sunday of the Sunday-Saturday week containing ``day``."""
    return day - timedelta(days=weekday_index(day))


def _scan_weekly(rule: RecurrenceRule, candidate: date) -> date:
    # Fires only in weeks a multiple of interval_count away from the start week
    interval = rule.interval_count
    start_week = _week_start(rule.start_date)
    while True:
        week = _week_start(candidate)
        offset = ((week - start_week).days // 7) % interval
        if offset:
            candidate = week + timedelta(weeks=interval - offset)
            continue
        if weekday_index(candidate) in rule.weekly_pattern:
            return candidate
        candidate += timedelta(days=1)


def _next_weekly(rule: RecurrenceRule, after_date: date) -> date:
    if not rule.weekly_pattern:
        return after_date + timedelta(weeks=rule.interval_count)
    return _scan_weekly(rule, after_date + timedelta(days=1))


def next_occurrence(rule: RecurrenceRule, after_date: date) -> date:
    """Next occurrence strictly after ``after_date``.

    Raises:
        InvalidRuleError: see ``validate_rule``.
    """
    validate_rule(rule)
    interval = rule.interval_count

    if rule.frequency == Frequency.DAILY:
        return after_date + timedelta(days=interval)

    if rule.frequency == Frequency.WEEKLY:
        return _next_weekly(rule, after_date)

    if rule.frequency == Frequency.MONTHLY:
        target = after_date + relativedelta(months=interval)
        return _monthly_slot(rule.monthly_pattern, target.year, target.month)

    if rule.frequency == Frequency.QUARTERLY:
        target = after_date + relativedelta(months=3 * interval)
        return _clamp_day(target.year, target.month, _quarterly_day(rule))

    if rule.frequency == Frequency.YEARLY:
        target = after_date + relativedelta(years=interval)
        if target.month == rule.start_date.month:
            return _clamp_day(target.year, target.month, rule.start_date.day)
        return target

    raise InvalidRuleError(str(rule.id), f"unsupported frequency {rule.frequency!r}")


def occurrence_on_or_after(rule: RecurrenceRule, day: date) -> date:
    """Earliest date on or after ``day`` that matches the rule's pattern.

    Daily and yearly rules match any day; weekly rules take the first
    pattern day in a week that is in phase with the start week;
    monthly and quarterly rules take the slot in ``day``'s month or, if it
    has passed, the following month.
    """
    validate_rule(rule)
    start = day

    if rule.frequency == Frequency.WEEKLY and rule.weekly_pattern:
        return _scan_weekly(rule, start)

    if rule.frequency == Frequency.MONTHLY:
        slot = _monthly_slot(rule.monthly_pattern, start.year, start.month)
        if slot < start:
            following = start + relativedelta(months=1)
            slot = _monthly_slot(rule.monthly_pattern, following.year, following.month)
        return slot

    if rule.frequency == Frequency.QUARTERLY:
        anchor_day = _quarterly_day(rule)
        slot = _clamp_day(start.year, start.month, anchor_day)
        if slot < start:
            following = start + relativedelta(months=1)
            slot = _clamp_day(following.year, following.month, anchor_day)
        return slot

    return start


def first_occurrence(rule: RecurrenceRule) -> date:
    """Initial cursor: the first valid occurrence on or after ``start_date``.

    Equals ``start_date`` whenever the start date itself matches the pattern.
    """
    return occurrence_on_or_after(rule, rule.start_date)


def iter_occurrences(
    rule: RecurrenceRule,
    start: date,
    until: date,
    limit: int | None = None,
) -> Iterator[date]:
    """Yield occurrences from ``start`` (inclusive) through ``until``.

    Stops at the rule's end date, at its remaining occurrence allowance and
    after ``limit`` dates.  ``start`` should be a valid occurrence, usually
    the cursor.
    """
    remaining = None
    if rule.max_occurrences is not None:
        remaining = max(rule.max_occurrences - rule.execution_count, 0)

    produced = 0
    current = start
    while current <= until:
        if rule.end_date is not None and current > rule.end_date:
            return
        if remaining is not None and produced >= remaining:
            return
        if limit is not None and produced >= limit:
            return
        yield current
        produced += 1
        current = next_occurrence(rule, current)
