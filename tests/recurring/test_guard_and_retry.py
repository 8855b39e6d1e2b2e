"""
Tests for series exhaustion checks and the retry backoff policy.
"""

from datetime import date
from uuid import uuid4

from family_config.schema import RetryPolicyDef, SchedulerConfig
from family_recurring.domain.guard import (
    END_DATE_REACHED,
    MAX_OCCURRENCES_REACHED,
    exhaustion_reason,
    is_due,
    is_exhausted,
)
from family_recurring.domain.retry import RetryPolicy
from family_recurring.domain.types import Frequency, RecurrenceRule


def _rule(**kwargs) -> RecurrenceRule:
    params = dict(
        id=uuid4(),
        frequency=Frequency.DAILY,
        interval_count=1,
        start_date=date(2024, 1, 1),
        next_execution_date=date(2024, 1, 1),
    )
    params.update(kwargs)
    return RecurrenceRule(**params)


# =============================================================================
# Exhaustion
# =============================================================================


class TestExhaustion:

    def test_open_ended_rule_is_live(self):
        assert exhaustion_reason(_rule(next_execution_date=date(2099, 1, 1))) is None

    def test_cursor_on_end_date_is_live(self):
        rule = _rule(end_date=date(2024, 1, 5), next_execution_date=date(2024, 1, 5))
        assert not is_exhausted(rule)

    def test_cursor_past_end_date(self):
        rule = _rule(end_date=date(2024, 1, 5), next_execution_date=date(2024, 1, 6))
        assert exhaustion_reason(rule) == END_DATE_REACHED

    def test_max_occurrences_reached(self):
        rule = _rule(max_occurrences=3, execution_count=3)
        assert exhaustion_reason(rule) == MAX_OCCURRENCES_REACHED

    def test_failed_attempts_do_not_count(self):
        rule = _rule(max_occurrences=3, execution_count=2, failed_execution_count=5)
        assert not is_exhausted(rule)

    def test_max_occurrences_reported_first(self):
        rule = _rule(
            max_occurrences=1,
            execution_count=1,
            end_date=date(2024, 1, 1),
            next_execution_date=date(2024, 1, 2),
        )
        assert exhaustion_reason(rule) == MAX_OCCURRENCES_REACHED

    def test_monotonic_in_cursor(self):
        rule = _rule(end_date=date(2024, 1, 5), next_execution_date=date(2024, 1, 6))
        later = _rule(end_date=date(2024, 1, 5), next_execution_date=date(2024, 3, 1))
        assert is_exhausted(rule) and is_exhausted(later)


class TestIsDue:

    def test_due_on_cursor_date(self):
        assert is_due(_rule(), date(2024, 1, 1))

    def test_not_due_before_cursor(self):
        assert not is_due(_rule(), date(2023, 12, 31))

    def test_inactive_not_due(self):
        assert not is_due(_rule(is_active=False), date(2024, 1, 1))

    def test_exhausted_not_due(self):
        assert not is_due(_rule(max_occurrences=1, execution_count=1), date(2024, 1, 1))


# =============================================================================
# Retry policy
# =============================================================================


class TestRetryPolicy:

    def test_exponential_backoff(self):
        policy = RetryPolicy()
        assert [policy.backoff_passes(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]

    def test_backoff_capped(self):
        policy = RetryPolicy(max_backoff_passes=5)
        assert policy.backoff_passes(10) == 5

    def test_next_retry_date_uses_pass_interval(self):
        policy = RetryPolicy(pass_interval_days=7)
        assert policy.next_retry_date(2, date(2024, 1, 1)) == date(2024, 1, 15)

    def test_terminal_after_max_retries(self):
        policy = RetryPolicy(max_retries=3)
        assert policy.next_retry_date(2, date(2024, 1, 1)) is not None
        assert policy.next_retry_date(3, date(2024, 1, 1)) is None

    def test_permanent_failure_never_retried(self):
        assert RetryPolicy().next_retry_date(1, date(2024, 1, 1), permanent=True) is None

    def test_from_config(self):
        config = SchedulerConfig(
            retry=RetryPolicyDef(max_retries=5, backoff_base_passes=2,
                                 backoff_multiplier=3, max_backoff_passes=20),
            pass_interval_days=2,
        )
        policy = RetryPolicy.from_config(config)
        assert policy.max_retries == 5
        assert policy.backoff_passes(2) == 6
        assert policy.next_retry_date(1, date(2024, 1, 1)) == date(2024, 1, 5)
