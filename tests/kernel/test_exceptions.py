"""Tests for the typed exception hierarchy (family_kernel/exceptions.py)."""

from datetime import date

import pytest

from family_kernel.exceptions import (
    AccountUnavailableError,
    ConfigurationError,
    FamilyHubError,
    InsufficientFundsError,
    InvalidExecutionTransitionError,
    InvalidRuleError,
    MaterializationError,
    MaterializationTimeoutError,
    RecurrenceError,
    RecurringTransactionNotFoundError,
    RuleBusyError,
    SafetyCapExceededError,
)

DAY = date(2024, 1, 15)


@pytest.mark.parametrize(
    "error, code, base",
    [
        (InvalidRuleError("r1", "bad"), "INVALID_RECURRENCE_RULE", RecurrenceError),
        (SafetyCapExceededError("r1", 10, 10), "SAFETY_CAP_EXCEEDED", RecurrenceError),
        (RecurringTransactionNotFoundError("r1"), "RECURRING_TRANSACTION_NOT_FOUND",
         RecurrenceError),
        (RuleBusyError("r1"), "RULE_BUSY", RecurrenceError),
        (InvalidExecutionTransitionError("e1", "completed", "failed"),
         "INVALID_EXECUTION_TRANSITION", RecurrenceError),
        (MaterializationTimeoutError("r1", DAY, 30.0), "MATERIALIZATION_TIMEOUT",
         MaterializationError),
        (InsufficientFundsError("r1", DAY, "a1"), "INSUFFICIENT_FUNDS", MaterializationError),
        (AccountUnavailableError("r1", DAY, "a1"), "ACCOUNT_UNAVAILABLE", MaterializationError),
        (ConfigurationError("max_workers", "must be >= 1"), "INVALID_CONFIGURATION",
         FamilyHubError),
    ],
)
def test_codes_and_hierarchy(error, code, base):
    assert error.code == code
    assert isinstance(error, base)
    assert isinstance(error, FamilyHubError)


class TestRetryability:

    def test_retryable_by_default(self):
        assert MaterializationError("r1", DAY, "x").retryable

    def test_timeout_and_funds_retryable(self):
        assert MaterializationTimeoutError("r1", DAY, 5).retryable
        assert InsufficientFundsError("r1", DAY, "a1").retryable

    def test_unavailable_account_permanent(self):
        assert not AccountUnavailableError("r1", DAY, "a1").retryable


class TestMessages:

    def test_materialization_message(self):
        error = MaterializationError("r1", DAY, "ledger closed")
        assert str(error) == "Recurring transaction r1 on 2024-01-15: ledger closed"
        assert error.reason == "ledger closed"

    def test_timeout_reason(self):
        assert MaterializationTimeoutError("r1", DAY, 2.5).reason == (
            "transaction store timed out after 2.5s"
        )

    def test_unsaved_rule_label(self):
        assert "<unsaved>" in str(InvalidRuleError(None, "amount must be positive"))
