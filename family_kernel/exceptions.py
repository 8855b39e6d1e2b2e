"""
Typed exception hierarchy for the family hub recurring engine.

Every error carries a class-level ``code`` (machine-readable, stable across
message rewording) and keeps its context as attributes, so callers catch by
type and read structured data instead of parsing messages.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FamilyHubError (base)
    |
    +-- RecurrenceError
    |   +-- InvalidRuleError
    |   +-- SafetyCapExceededError
    |   +-- RecurringTransactionNotFoundError
    |   +-- RuleBusyError
    |   +-- InvalidExecutionTransitionError
    |
    +-- MaterializationError          (retryable)
    |   +-- MaterializationTimeoutError  (retryable)
    |   +-- InsufficientFundsError       (retryable)
    |   +-- AccountUnavailableError      (permanent)
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                             | When Raised
----------------|----------------------------------|------------------------------------
Recurrence      | INVALID_RECURRENCE_RULE          | Pattern missing / out of range
                | SAFETY_CAP_EXCEEDED              | Catch-up loop ran too long
                | RECURRING_TRANSACTION_NOT_FOUND  | Unknown recurring transaction id
                | RULE_BUSY                        | Another pass holds the rule
                | INVALID_EXECUTION_TRANSITION     | Illegal execution status change
----------------|----------------------------------|------------------------------------
Materialization | MATERIALIZATION_FAILED           | Transaction store call failed
                | MATERIALIZATION_TIMEOUT          | Store call exceeded its timeout
                | INSUFFICIENT_FUNDS               | Expense exceeds account balance
                | ACCOUNT_UNAVAILABLE              | Account deleted or inactive
----------------|----------------------------------|------------------------------------
Configuration   | INVALID_CONFIGURATION            | Bad scheduler YAML value

Reaching the end of a series is NOT an error: it is a normal transition to
``is_active = False`` reported through a ``series_exhausted`` event.

===============================================================================
HANDLING PATTERNS
===============================================================================

1. PER-RULE ISOLATION: the scheduler runner catches RecurrenceError and
   MaterializationError per rule and folds them into the pass summary.
   Nothing raised for one rule aborts the pass.

2. RETRYABILITY is a property of the exception type:

    except MaterializationError as e:
        if e.retryable:
            schedule_retry(e)
        else:
            surface_for_review(e)
"""

from datetime import date


class FamilyHubError(Exception):
    """
    Base exception for all family hub engine errors.

    All subclasses must define a ``code`` class attribute.
    """

    code: str = "FAMILY_HUB_ERROR"


# Recurrence-related exceptions


class RecurrenceError(FamilyHubError):
    """Base exception for recurrence rule and scheduling errors."""

    code: str = "RECURRENCE_ERROR"


class InvalidRuleError(RecurrenceError):
    """
    Recurrence rule is malformed.

    Fatal for the rule's current pass only; the rule stays active so an
    operator can correct it.
    """

    code: str = "INVALID_RECURRENCE_RULE"

    def __init__(self, rule_id: str | None, reason: str):
        self.rule_id = rule_id
        self.reason = reason
        label = rule_id or "<unsaved>"
        super().__init__(f"Invalid recurrence rule {label}: {reason}")


class SafetyCapExceededError(RecurrenceError):
    """Catch-up loop for one rule exceeded the per-pass iteration cap."""

    code: str = "SAFETY_CAP_EXCEEDED"

    def __init__(self, rule_id: str, iterations: int, cap: int):
        self.rule_id = rule_id
        self.iterations = iterations
        self.cap = cap
        super().__init__(
            f"Recurring transaction {rule_id} exceeded {cap} occurrences "
            f"in one pass ({iterations} processed)"
        )


class RecurringTransactionNotFoundError(RecurrenceError):
    """Recurring transaction with given ID was not found."""

    code: str = "RECURRING_TRANSACTION_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Recurring transaction not found: {rule_id}")


class RuleBusyError(RecurrenceError):
    """Another pass currently owns this rule's cursor."""

    code: str = "RULE_BUSY"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(
            f"Recurring transaction {rule_id} is being processed by another pass"
        )


class InvalidExecutionTransitionError(RecurrenceError):
    """Execution record status change not allowed by the lifecycle."""

    code: str = "INVALID_EXECUTION_TRANSITION"

    def __init__(self, execution_id: str, current_status: str, target_status: str):
        self.execution_id = execution_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Execution {execution_id} cannot move from "
            f"{current_status} to {target_status}"
        )


# Materialization exceptions


class MaterializationError(FamilyHubError):
    """
    Creating the concrete transaction for an occurrence failed.

    Retryable unless a subclass says otherwise.
    """

    code: str = "MATERIALIZATION_FAILED"
    retryable: bool = True

    def __init__(
        self,
        rule_id: str,
        scheduled_date: date,
        reason: str,
    ):
        self.rule_id = rule_id
        self.scheduled_date = scheduled_date
        self.reason = reason
        super().__init__(
            f"Recurring transaction {rule_id} on {scheduled_date.isoformat()}: {reason}"
        )


class MaterializationTimeoutError(MaterializationError):
    """Transaction store call did not finish within its timeout."""

    code: str = "MATERIALIZATION_TIMEOUT"

    def __init__(self, rule_id: str, scheduled_date: date, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            rule_id,
            scheduled_date,
            f"transaction store timed out after {timeout_seconds}s",
        )


class InsufficientFundsError(MaterializationError):
    """Expense occurrence exceeds the available account balance."""

    code: str = "INSUFFICIENT_FUNDS"

    def __init__(self, rule_id: str, scheduled_date: date, account_id: str):
        self.account_id = account_id
        super().__init__(rule_id, scheduled_date, "Insufficient account balance")


class AccountUnavailableError(MaterializationError):
    """
    Referenced account no longer exists or is inactive.

    Permanent: the occurrence is failed without scheduling a retry.
    """

    code: str = "ACCOUNT_UNAVAILABLE"
    retryable: bool = False

    def __init__(self, rule_id: str, scheduled_date: date, account_id: str):
        self.account_id = account_id
        super().__init__(
            rule_id,
            scheduled_date,
            f"Account {account_id} does not exist or is inactive",
        )


# Configuration exceptions


class ConfigurationError(FamilyHubError):
    """Scheduler configuration value is missing or invalid."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration '{key}': {reason}")
