"""
RecurringRuleService -- catalogue of a family's recurring transactions.

Responsibility:
    Create, update, pause / resume and delete recurring transactions, and
    answer the read queries behind the recurring transactions page:
    upcoming occurrences, per-family summary, execution history and the
    manual-review list of failed occurrences.

Architecture position:
    family_recurring/services -- imperative shell.  Session-bound; does NOT
    commit (caller controls transaction boundaries).

Invariants enforced:
    - A rule is validated before it is stored; the initial cursor is the
      first valid occurrence on or after ``start_date``.
    - Schedule edits re-align the cursor to the first valid occurrence on or
      after the later of the current cursor and ``start_date``.  The cursor
      never moves backwards.
    - Pausing turns PENDING execution records into SKIPPED.
    - Deleting cancels open records before the cascade removes them.

Failure modes:
    - RecurringTransactionNotFoundError: unknown id.
    - InvalidRuleError: malformed schedule, non-positive amount or empty
      description.

Audit relevance:
    Amounts are masked in creation and update logs.  Creating a series
    above ``LARGE_AMOUNT_THRESHOLD`` logs a
    ``large_recurring_transaction_created`` warning.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from family_config.schema import SchedulerConfig
from family_kernel.db.base import SYSTEM_ACTOR_ID
from family_kernel.domain.clock import Clock, SystemClock
from family_kernel.exceptions import (
    InvalidRuleError,
    RecurringTransactionNotFoundError,
)
from family_kernel.logging_config import LogContext, get_logger
from family_recurring.domain.advancer import (
    first_occurrence,
    iter_occurrences,
    occurrence_on_or_after,
)
from family_recurring.domain.retry import RetryPolicy
from family_recurring.domain.types import (
    ExecutionRecord,
    ExecutionStatus,
    Frequency,
    MonthlyPattern,
    RecurrenceRule,
    RecurringSummary,
    RecurringTransaction,
    TransactionTemplate,
    TransactionType,
    UpcomingOccurrence,
)
from family_recurring.models.recurring import RecurringTransactionModel
from family_recurring.services.collaborators import EventSink, LoggingEventSink
from family_recurring.services.tracker import ExecutionTracker

logger = get_logger("recurring.rule_service")

LARGE_AMOUNT_THRESHOLD = Decimal("1000")
MASKED = "***"

_TEMPLATE_FIELDS = frozenset({
    "description",
    "amount",
    "transaction_type",
    "account_id",
    "category_id",
    "notes",
})

_SCHEDULE_FIELDS = frozenset({
    "frequency",
    "interval_count",
    "start_date",
    "end_date",
    "max_occurrences",
    "weekly_pattern",
    "monthly_pattern",
})


def _money(value: Decimal | int | str) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise InvalidRuleError(None, f"amount is not a number: {value!r}") from exc
    if amount <= 0:
        raise InvalidRuleError(None, f"amount must be positive, got {amount}")
    return amount


def _description(value: str) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidRuleError(None, "description must not be empty")
    return text


def _mask(changes: dict[str, Any]) -> dict[str, Any]:
    return {k: (MASKED if k == "amount" else v) for k, v in changes.items()}


class RecurringRuleService:
    """Manages recurring transactions for families.

    Contract:
        - Mutations return the updated ``RecurringTransaction`` DTO.
        - Queries return frozen DTOs, never ORM rows.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        config: SchedulerConfig | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or SchedulerConfig()
        self._actor_id = actor_id
        self._tracker = ExecutionTracker(
            session,
            retry_policy=RetryPolicy.from_config(self._config),
            clock=self._clock,
            event_sink=event_sink or LoggingEventSink(),
            actor_id=actor_id,
        )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create(
        self,
        *,
        family_id: UUID,
        account_id: UUID,
        description: str,
        amount: Decimal | int | str,
        transaction_type: TransactionType | str,
        frequency: Frequency | str,
        start_date: date,
        created_by: UUID,
        interval_count: int = 1,
        end_date: date | None = None,
        max_occurrences: int | None = None,
        weekly_pattern: frozenset[int] | set[int] | list[int] | None = None,
        monthly_pattern: MonthlyPattern | None = None,
        category_id: UUID | None = None,
        notes: str | None = None,
    ) -> RecurringTransaction:
        """Create a recurring transaction and place its cursor."""
        template = TransactionTemplate(
            family_id=family_id,
            account_id=account_id,
            description=_description(description),
            amount=_money(amount),
            transaction_type=TransactionType(transaction_type),
            created_by=created_by,
            category_id=category_id,
            notes=notes,
        )
        rule = RecurrenceRule(
            id=uuid4(),
            frequency=Frequency(frequency),
            interval_count=interval_count,
            start_date=start_date,
            next_execution_date=start_date,
            end_date=end_date,
            max_occurrences=max_occurrences,
            weekly_pattern=frozenset(weekly_pattern or ()),
            monthly_pattern=monthly_pattern,
        )
        rule = replace(rule, next_execution_date=first_occurrence(rule))

        model = RecurringTransactionModel.from_dto(
            RecurringTransaction(rule=rule, template=template)
        )
        self._session.add(model)
        self._session.flush()

        with LogContext.bind(family_id=str(family_id), actor_id=str(created_by)):
            logger.info(
                "recurring_transaction_created",
                extra={
                    "recurring_transaction_id": str(model.id),
                    "frequency": rule.frequency.value,
                    "interval_count": rule.interval_count,
                    "next_execution_date": rule.next_execution_date,
                    "amount": MASKED,
                },
            )
            if template.amount > LARGE_AMOUNT_THRESHOLD:
                logger.warning(
                    "large_recurring_transaction_created",
                    extra={
                        "recurring_transaction_id": str(model.id),
                        "amount": template.amount,
                        "frequency": rule.frequency.value,
                    },
                )
        return model.to_dto()

    def update(
        self,
        rule_id: UUID,
        updated_by: UUID | None = None,
        **changes: Any,
    ) -> RecurringTransaction:
        """Change template and/or schedule fields.

        Raises:
            TypeError: on an unknown field name.
        """
        unknown = set(changes) - _TEMPLATE_FIELDS - _SCHEDULE_FIELDS
        if unknown:
            raise TypeError(f"Unknown recurring transaction fields: {sorted(unknown)}")

        model = self._require(rule_id)

        if "description" in changes:
            model.description = _description(changes["description"])
        if "amount" in changes:
            model.amount = _money(changes["amount"])
        if "transaction_type" in changes:
            model.transaction_type = TransactionType(changes["transaction_type"]).value
        for name in ("account_id", "category_id", "notes"):
            if name in changes:
                setattr(model, name, changes[name])

        schedule_changes = {k: v for k, v in changes.items() if k in _SCHEDULE_FIELDS}
        if schedule_changes:
            if "frequency" in schedule_changes:
                schedule_changes["frequency"] = Frequency(schedule_changes["frequency"])
            if "weekly_pattern" in schedule_changes:
                schedule_changes["weekly_pattern"] = frozenset(
                    schedule_changes["weekly_pattern"] or ()
                )
            current = model.to_rule()
            rule = replace(current, **schedule_changes)
            anchor = max(current.next_execution_date, rule.start_date)
            rule = replace(rule, next_execution_date=occurrence_on_or_after(rule, anchor))
            model.apply_rule(rule)

        model.updated_by_id = updated_by or self._actor_id
        self._session.flush()

        logger.info(
            "recurring_transaction_updated",
            extra={
                "recurring_transaction_id": str(rule_id),
                "changes": _mask(changes),
                "next_execution_date": model.next_execution_date,
            },
        )
        return model.to_dto()

    def set_active(
        self,
        rule_id: UUID,
        active: bool,
        updated_by: UUID | None = None,
    ) -> RecurringTransaction:
        """Pause or resume a series.  Pausing skips its PENDING records."""
        model = self._require(rule_id)
        model.is_active = active
        model.updated_by_id = updated_by or self._actor_id

        skipped = 0
        if not active:
            for record in self._tracker.open_records(rule_id):
                if record.status == ExecutionStatus.PENDING.value:
                    self._tracker.skip(record, "recurring transaction deactivated")
                    skipped += 1
        self._session.flush()

        logger.info(
            "recurring_transaction_toggled",
            extra={
                "recurring_transaction_id": str(rule_id),
                "is_active": active,
                "skipped_records": skipped,
            },
        )
        return model.to_dto()

    def delete(self, rule_id: UUID) -> None:
        """Cancel open records, then delete the series and its history."""
        model = self._require(rule_id)
        cancelled = 0
        for record in self._tracker.open_records(rule_id):
            self._tracker.cancel(record, model)
            cancelled += 1

        self._session.delete(model)
        self._session.flush()

        logger.info(
            "recurring_transaction_deleted",
            extra={
                "recurring_transaction_id": str(rule_id),
                "cancelled_records": cancelled,
            },
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, rule_id: UUID) -> RecurringTransaction:
        return self._require(rule_id).to_dto()

    def list_for_family(
        self,
        family_id: UUID,
        active: bool | None = None,
        frequency: Frequency | str | None = None,
        account_id: UUID | None = None,
        transaction_type: TransactionType | str | None = None,
    ) -> list[RecurringTransaction]:
        stmt = select(RecurringTransactionModel).where(
            RecurringTransactionModel.family_id == family_id,
        )
        if active is not None:
            stmt = stmt.where(RecurringTransactionModel.is_active == active)
        if frequency is not None:
            stmt = stmt.where(
                RecurringTransactionModel.frequency == Frequency(frequency).value,
            )
        if account_id is not None:
            stmt = stmt.where(RecurringTransactionModel.account_id == account_id)
        if transaction_type is not None:
            stmt = stmt.where(
                RecurringTransactionModel.transaction_type
                == TransactionType(transaction_type).value,
            )
        stmt = stmt.order_by(
            RecurringTransactionModel.next_execution_date,
            RecurringTransactionModel.created_at,
        )
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]

    def upcoming(
        self,
        family_id: UUID,
        as_of: date | None = None,
        days_ahead: int | None = None,
    ) -> list[UpcomingOccurrence]:
        """Active, non-exhausted series due within ``days_ahead`` days.

        Overdue series (cursor before ``as_of``) are included with a
        negative ``days_until``.
        """
        as_of = as_of or self._clock.today()
        if days_ahead is None:
            days_ahead = self._config.upcoming_days_ahead
        horizon = as_of + timedelta(days=days_ahead)

        models = self._session.execute(
            select(RecurringTransactionModel)
            .where(
                RecurringTransactionModel.family_id == family_id,
                RecurringTransactionModel.is_active == True,  # noqa: E712
                RecurringTransactionModel.next_execution_date <= horizon,
            )
            .order_by(
                RecurringTransactionModel.next_execution_date,
                RecurringTransactionModel.created_at,
            )
        ).scalars().all()

        upcoming: list[UpcomingOccurrence] = []
        for model in models:
            rule = model.to_rule()
            # None when the series ended before its cursor
            first = next(
                iter_occurrences(rule, rule.next_execution_date, horizon, limit=1), None,
            )
            if first is None:
                continue
            upcoming.append(
                UpcomingOccurrence(
                    rule_id=model.id,
                    description=model.description,
                    amount=model.amount,
                    transaction_type=TransactionType(model.transaction_type),
                    account_id=model.account_id,
                    frequency=rule.frequency,
                    next_execution_date=first,
                    days_until=(first - as_of).days,
                )
            )
        return upcoming

    def summary(self, family_id: UUID, as_of: date | None = None) -> RecurringSummary:
        total = self._session.execute(
            select(func.count(RecurringTransactionModel.id)).where(
                RecurringTransactionModel.family_id == family_id,
            )
        ).scalar_one()
        active = self._session.execute(
            select(func.count(RecurringTransactionModel.id)).where(
                RecurringTransactionModel.family_id == family_id,
                RecurringTransactionModel.is_active == True,  # noqa: E712
            )
        ).scalar_one()
        return RecurringSummary(
            family_id=family_id,
            active_count=active,
            total_count=total,
            upcoming_count=len(self.upcoming(family_id, as_of)),
        )

    def execution_history(
        self,
        rule_id: UUID | None = None,
        family_id: UUID | None = None,
    ) -> list[ExecutionRecord]:
        return [r.to_dto() for r in self._tracker.history(rule_id, family_id)]

    def failures_for_review(self, family_id: UUID | None = None) -> list[ExecutionRecord]:
        return [r.to_dto() for r in self._tracker.failures_for_review(family_id)]

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _require(self, rule_id: UUID) -> RecurringTransactionModel:
        model = self._session.get(RecurringTransactionModel, rule_id)
        if model is None:
            raise RecurringTransactionNotFoundError(str(rule_id))
        return model
