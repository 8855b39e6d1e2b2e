"""
Tests for pure recurrence date advancement.

Covers:
- Daily / weekly / monthly / quarterly / yearly next_occurrence
- Weekly day patterns with interval > 1 (Sunday-Saturday weeks)
- Month-end clamping and "last weekday of month"
- First occurrence placement and iter_occurrences bounds
- validate_rule rejection of malformed rules
"""

from datetime import date
from uuid import uuid4

import pytest

from family_kernel.exceptions import InvalidRuleError
from family_recurring.domain.advancer import (
    first_occurrence,
    iter_occurrences,
    next_occurrence,
    occurrence_on_or_after,
    validate_rule,
    weekday_index,
)
from family_recurring.domain.types import Frequency, MonthlyPattern, RecurrenceRule

SUN, MON, TUE, WED, THU, FRI, SAT = range(7)


def _rule(frequency, start=date(2024, 1, 1), interval=1, **kwargs) -> RecurrenceRule:
    return RecurrenceRule(
        id=uuid4(),
        frequency=Frequency(frequency),
        interval_count=interval,
        start_date=start,
        next_execution_date=kwargs.pop("next_execution_date", start),
        **kwargs,
    )


def _chain(rule: RecurrenceRule, start: date, count: int) -> list[date]:
    dates = [start]
    while len(dates) < count:
        dates.append(next_occurrence(rule, dates[-1]))
    return dates


# =============================================================================
# Weekday convention
# =============================================================================


class TestWeekdayIndex:

    def test_sunday_is_zero(self):
        assert weekday_index(date(2024, 1, 7)) == SUN

    def test_monday_is_one(self):
        assert weekday_index(date(2024, 1, 1)) == MON

    def test_saturday_is_six(self):
        assert weekday_index(date(2024, 1, 6)) == SAT


# =============================================================================
# Daily
# =============================================================================


class TestDaily:

    def test_every_day(self):
        assert next_occurrence(_rule("daily"), date(2024, 1, 1)) == date(2024, 1, 2)

    def test_every_three_days_crosses_month(self):
        rule = _rule("daily", interval=3)
        assert next_occurrence(rule, date(2024, 1, 30)) == date(2024, 2, 2)

    def test_leap_day(self):
        assert next_occurrence(_rule("daily"), date(2024, 2, 28)) == date(2024, 2, 29)


# =============================================================================
# Weekly
# =============================================================================


class TestWeekly:

    def test_mon_wed_fri(self):
        rule = _rule("weekly", weekly_pattern=frozenset({MON, WED, FRI}))
        assert _chain(rule, date(2024, 1, 1), 4) == [
            date(2024, 1, 1),
            date(2024, 1, 3),
            date(2024, 1, 5),
            date(2024, 1, 8),
        ]

    def test_no_pattern_adds_whole_weeks(self):
        rule = _rule("weekly", interval=2)
        assert next_occurrence(rule, date(2024, 1, 1)) == date(2024, 1, 15)

    def test_biweekly_pattern_skips_alternate_weeks(self):
        # Weeks run Sunday-Saturday; the week of Jan 7 is skipped
        rule = _rule("weekly", interval=2, weekly_pattern=frozenset({MON, THU}))
        assert _chain(rule, date(2024, 1, 1), 5) == [
            date(2024, 1, 1),
            date(2024, 1, 4),
            date(2024, 1, 15),
            date(2024, 1, 18),
            date(2024, 1, 29),
        ]

    def test_sunday_only_biweekly(self):
        rule = _rule("weekly", start=date(2024, 1, 7), interval=2,
                     weekly_pattern=frozenset({SUN}))
        assert next_occurrence(rule, date(2024, 1, 7)) == date(2024, 1, 21)

    def test_biweekly_start_off_pattern_keeps_start_week_phase(self):
        # Start week is Sun Dec 31 - Sat Jan 6; Mondays fire in weeks 2, 4, ...
        rule = _rule("weekly", start=date(2024, 1, 3), interval=2,
                     weekly_pattern=frozenset({MON}))
        first = first_occurrence(rule)
        assert _chain(rule, first, 3) == [
            date(2024, 1, 15),
            date(2024, 1, 29),
            date(2024, 2, 12),
        ]

    def test_off_phase_cursor_returns_to_start_week_phase(self):
        rule = _rule("weekly", start=date(2024, 1, 3), interval=2,
                     weekly_pattern=frozenset({MON}))
        assert next_occurrence(rule, date(2024, 1, 8)) == date(2024, 1, 15)

    def test_every_third_week_from_saturday_start(self):
        rule = _rule("weekly", start=date(2024, 1, 6), interval=3,
                     weekly_pattern=frozenset({TUE}))
        assert first_occurrence(rule) == date(2024, 1, 23)
        assert next_occurrence(rule, date(2024, 1, 23)) == date(2024, 2, 13)

    def test_saturday_to_next_week(self):
        rule = _rule("weekly", weekly_pattern=frozenset({SAT, TUE}))
        assert next_occurrence(rule, date(2024, 1, 6)) == date(2024, 1, 9)


# =============================================================================
# Monthly
# =============================================================================


class TestMonthly:

    def test_day_of_month(self):
        rule = _rule("monthly", start=date(2024, 1, 15),
                     monthly_pattern=MonthlyPattern(day_of_month=15))
        assert next_occurrence(rule, date(2024, 1, 15)) == date(2024, 2, 15)

    def test_day_31_clamps_to_leap_february(self):
        rule = _rule("monthly", start=date(2024, 1, 31),
                     monthly_pattern=MonthlyPattern(day_of_month=31))
        assert _chain(rule, date(2024, 1, 31), 4) == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 31),
            date(2024, 4, 30),
        ]

    def test_day_31_clamps_to_non_leap_february(self):
        rule = _rule("monthly", start=date(2023, 1, 31),
                     monthly_pattern=MonthlyPattern(day_of_month=31))
        assert next_occurrence(rule, date(2023, 1, 31)) == date(2023, 2, 28)

    def test_second_tuesday(self):
        rule = _rule("monthly", start=date(2024, 1, 9),
                     monthly_pattern=MonthlyPattern(week_of_month=2, day_of_week=TUE))
        assert _chain(rule, date(2024, 1, 9), 3) == [
            date(2024, 1, 9),
            date(2024, 2, 13),
            date(2024, 3, 12),
        ]

    def test_week_five_means_last(self):
        # Last Friday: March 2024 has five Fridays, April has four
        rule = _rule("monthly", start=date(2024, 3, 29),
                     monthly_pattern=MonthlyPattern(week_of_month=5, day_of_week=FRI))
        assert _chain(rule, date(2024, 3, 29), 3) == [
            date(2024, 3, 29),
            date(2024, 4, 26),
            date(2024, 5, 31),
        ]

    def test_every_two_months(self):
        rule = _rule("monthly", interval=2,
                     monthly_pattern=MonthlyPattern(day_of_month=1))
        assert next_occurrence(rule, date(2024, 11, 1)) == date(2025, 1, 1)


# =============================================================================
# Quarterly and yearly
# =============================================================================


class TestQuarterly:

    def test_three_months_later(self):
        assert next_occurrence(_rule("quarterly"), date(2024, 1, 1)) == date(2024, 4, 1)

    def test_clamps_and_recovers_anchor_day(self):
        rule = _rule("quarterly", start=date(2023, 11, 30))
        assert _chain(rule, date(2023, 11, 30), 3) == [
            date(2023, 11, 30),
            date(2024, 2, 29),
            date(2024, 5, 30),
        ]

    def test_day_of_month_overrides_start_day(self):
        rule = _rule("quarterly", start=date(2024, 1, 10),
                     monthly_pattern=MonthlyPattern(day_of_month=31))
        assert next_occurrence(rule, date(2024, 1, 31)) == date(2024, 4, 30)


class TestYearly:

    def test_one_year_later(self):
        rule = _rule("yearly", start=date(2024, 3, 15))
        assert next_occurrence(rule, date(2024, 3, 15)) == date(2025, 3, 15)

    def test_leap_day_clamps_then_recovers(self):
        rule = _rule("yearly", start=date(2024, 2, 29))
        assert _chain(rule, date(2024, 2, 29), 5) == [
            date(2024, 2, 29),
            date(2025, 2, 28),
            date(2026, 2, 28),
            date(2027, 2, 28),
            date(2028, 2, 29),
        ]


# =============================================================================
# First occurrence / on-or-after
# =============================================================================


class TestFirstOccurrence:

    def test_start_date_matching_pattern_is_kept(self):
        rule = _rule("weekly", weekly_pattern=frozenset({MON}))
        assert first_occurrence(rule) == date(2024, 1, 1)

    def test_weekly_moves_to_first_matching_day(self):
        rule = _rule("weekly", start=date(2024, 1, 2), weekly_pattern=frozenset({FRI}))
        assert first_occurrence(rule) == date(2024, 1, 5)

    def test_monthly_slot_already_passed(self):
        rule = _rule("monthly", start=date(2024, 1, 20),
                     monthly_pattern=MonthlyPattern(day_of_month=15))
        assert first_occurrence(rule) == date(2024, 2, 15)

    def test_monthly_nth_weekday_later_in_month(self):
        rule = _rule("monthly", start=date(2024, 1, 1),
                     monthly_pattern=MonthlyPattern(week_of_month=1, day_of_week=FRI))
        assert first_occurrence(rule) == date(2024, 1, 5)

    def test_daily_is_start_date(self):
        assert first_occurrence(_rule("daily", start=date(2024, 6, 3))) == date(2024, 6, 3)

    def test_on_or_after_quarterly_next_month(self):
        rule = _rule("quarterly", start=date(2024, 1, 10),
                     monthly_pattern=MonthlyPattern(day_of_month=5))
        assert occurrence_on_or_after(rule, date(2024, 1, 10)) == date(2024, 2, 5)


# =============================================================================
# iter_occurrences
# =============================================================================


class TestIterOccurrences:

    def test_stops_at_until(self):
        dates = list(iter_occurrences(_rule("daily"), date(2024, 1, 1), date(2024, 1, 3)))
        assert dates == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]

    def test_stops_at_end_date(self):
        rule = _rule("daily", end_date=date(2024, 1, 2))
        dates = list(iter_occurrences(rule, date(2024, 1, 1), date(2024, 1, 31)))
        assert dates == [date(2024, 1, 1), date(2024, 1, 2)]

    def test_respects_remaining_occurrences(self):
        rule = _rule("daily", max_occurrences=5, execution_count=3)
        dates = list(iter_occurrences(rule, date(2024, 1, 4), date(2024, 1, 31)))
        assert dates == [date(2024, 1, 4), date(2024, 1, 5)]

    def test_limit(self):
        dates = list(iter_occurrences(
            _rule("daily"), date(2024, 1, 1), date(2024, 12, 31), limit=2,
        ))
        assert len(dates) == 2


# =============================================================================
# Validation
# =============================================================================


class TestValidateRule:

    @pytest.mark.parametrize(
        "rule",
        [
            _rule("daily", interval=0),
            _rule("daily", max_occurrences=0),
            _rule("daily", end_date=date(2023, 12, 31)),
            _rule("weekly", weekly_pattern=frozenset({7})),
            _rule("monthly"),
            _rule("monthly", monthly_pattern=MonthlyPattern()),
            _rule("monthly", monthly_pattern=MonthlyPattern(day_of_month=32)),
            _rule("monthly", monthly_pattern=MonthlyPattern(
                day_of_month=1, week_of_month=1, day_of_week=MON)),
            _rule("monthly", monthly_pattern=MonthlyPattern(week_of_month=2)),
            _rule("monthly", monthly_pattern=MonthlyPattern(week_of_month=6, day_of_week=MON)),
            _rule("monthly", monthly_pattern=MonthlyPattern(week_of_month=1, day_of_week=7)),
            _rule("quarterly", monthly_pattern=MonthlyPattern(week_of_month=1, day_of_week=MON)),
        ],
        ids=[
            "zero-interval",
            "zero-max-occurrences",
            "end-before-start",
            "weekday-out-of-range",
            "monthly-without-pattern",
            "monthly-empty-pattern",
            "day-of-month-32",
            "both-monthly-modes",
            "week-without-weekday",
            "week-of-month-6",
            "day-of-week-7",
            "quarterly-nth-weekday",
        ],
    )
    def test_rejected(self, rule):
        with pytest.raises(InvalidRuleError) as exc_info:
            validate_rule(rule)
        assert exc_info.value.rule_id == str(rule.id)

    def test_next_occurrence_validates(self):
        with pytest.raises(InvalidRuleError):
            next_occurrence(_rule("monthly"), date(2024, 1, 1))

    def test_valid_rule_passes(self):
        validate_rule(_rule("weekly", weekly_pattern=frozenset({SUN, SAT})))
