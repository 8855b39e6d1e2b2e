"""
ExecutionTracker -- lifecycle of execution records.

Responsibility:
    Opens one execution record per (recurring transaction, scheduled date)
    and moves it through its lifecycle, applying the retry policy on
    failure and updating the rule's counters.

Architecture position:
    family_recurring/services -- imperative shell around the pure
    ``VALID_TRANSITIONS`` table and ``RetryPolicy``.

Invariants enforced:
    - Status changes follow ``VALID_TRANSITIONS``; anything else raises
      ``InvalidExecutionTransitionError``.
    - ``completed`` increments ``execution_count`` and moves
      ``last_execution_date`` forward only.
    - ``failed`` increments ``failed_execution_count`` and sets
      ``next_retry_date`` while retries remain.  Permanent failures and
      failures past ``max_retries`` are terminal: no ``next_retry_date``.
    - The tracker never moves the rule's cursor.  The runner advances it
      even when an occurrence fails, so a failing store cannot pin a
      series on one date; the failed occurrence is retried on its own
      schedule instead.

Failure modes:
    - InvalidExecutionTransitionError on an illegal status change.

Audit relevance:
    Emits ``occurrence_created``, ``occurrence_failed``,
    ``retries_exhausted`` and ``occurrence_cancelled`` events once the
    caller commits; a rollback discards them.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from family_kernel.db.base import SYSTEM_ACTOR_ID
from family_kernel.domain.clock import Clock, SystemClock
from family_kernel.exceptions import InvalidExecutionTransitionError, MaterializationError
from family_kernel.logging_config import get_logger
from family_recurring.domain.retry import RetryPolicy
from family_recurring.domain.types import VALID_TRANSITIONS, ExecutionStatus
from family_recurring.models.recurring import (
    RecurringExecutionModel,
    RecurringTransactionModel,
)
from family_recurring.services.collaborators import (
    EngineEvent,
    EventSink,
    EventType,
    LoggingEventSink,
    RiskLevel,
    emit_after_commit,
)

logger = get_logger("recurring.tracker")


class ExecutionTracker:
    """Records the outcome of each attempted occurrence.

    Contract:
        - ``open()`` returns the record for a scheduled date, creating a
          PENDING one if none exists.
        - ``complete()`` / ``fail()`` / ``skip()`` / ``cancel()`` move a
          record along the lifecycle.
        - ``abandon()`` ends the retry schedule of a failed record.
        - Query helpers for due retries, open records and history.
    """

    def __init__(
        self,
        session: Session,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._session = session
        self._policy = retry_policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._sink = event_sink or LoggingEventSink()
        self._actor_id = actor_id

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def open(
        self,
        rule_model: RecurringTransactionModel,
        scheduled_date: date,
    ) -> RecurringExecutionModel:
        """Return the record for ``scheduled_date``, creating a PENDING one."""
        existing = self.find(rule_model.id, scheduled_date)
        if existing is not None:
            logger.info(
                "execution_record_exists",
                extra={
                    "scheduled_date": scheduled_date,
                    "status": existing.status,
                },
            )
            return existing

        record = RecurringExecutionModel(
            recurring_transaction_id=rule_model.id,
            scheduled_date=scheduled_date,
            status=ExecutionStatus.PENDING.value,
            retry_count=0,
            created_by_id=self._actor_id,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def complete(
        self,
        record: RecurringExecutionModel,
        rule_model: RecurringTransactionModel,
        transaction_id: UUID,
        as_of: date,
    ) -> RecurringExecutionModel:
        self._transition(record, ExecutionStatus.COMPLETED)
        record.executed_date = as_of
        record.transaction_id = transaction_id
        record.next_retry_date = None
        record.updated_by_id = self._actor_id

        rule_model.execution_count += 1
        if (
            rule_model.last_execution_date is None
            or record.scheduled_date > rule_model.last_execution_date
        ):
            rule_model.last_execution_date = record.scheduled_date
        rule_model.updated_by_id = self._actor_id
        self._session.flush()

        logger.info(
            "occurrence_completed",
            extra={
                "scheduled_date": record.scheduled_date,
                "transaction_id": str(transaction_id),
                "retry_count": record.retry_count,
                "execution_count": rule_model.execution_count,
            },
        )
        self._emit(
            EventType.OCCURRENCE_CREATED,
            rule_model,
            record,
            transaction_id=str(transaction_id),
        )
        return record

    def fail(
        self,
        record: RecurringExecutionModel,
        rule_model: RecurringTransactionModel,
        error: MaterializationError,
        as_of: date,
    ) -> RecurringExecutionModel:
        """Mark a failed attempt and schedule the next retry, if any."""
        self._transition(record, ExecutionStatus.FAILED)
        record.retry_count += 1
        record.executed_date = as_of
        record.error_message = error.reason
        record.error_code = error.code
        record.next_retry_date = self._policy.next_retry_date(
            record.retry_count, as_of, permanent=not error.retryable,
        )
        record.updated_by_id = self._actor_id

        rule_model.failed_execution_count += 1
        rule_model.updated_by_id = self._actor_id
        self._session.flush()

        logger.warning(
            "occurrence_failed",
            extra={
                "scheduled_date": record.scheduled_date,
                "error_code": error.code,
                "retry_count": record.retry_count,
                "next_retry_date": record.next_retry_date,
            },
        )
        self._emit(
            EventType.OCCURRENCE_FAILED,
            rule_model,
            record,
            error_code=error.code,
            error_message=error.reason,
            retry_count=record.retry_count,
            next_retry_date=record.next_retry_date,
        )
        if record.next_retry_date is None:
            self._report_exhausted(record, rule_model, error.code)
        return record

    def skip(self, record: RecurringExecutionModel, reason: str) -> RecurringExecutionModel:
        self._transition(record, ExecutionStatus.SKIPPED)
        record.error_message = reason
        record.updated_by_id = self._actor_id
        self._session.flush()
        logger.info(
            "occurrence_skipped",
            extra={"scheduled_date": record.scheduled_date, "reason": reason},
        )
        return record

    def cancel(
        self,
        record: RecurringExecutionModel,
        rule_model: RecurringTransactionModel,
    ) -> RecurringExecutionModel:
        self._transition(record, ExecutionStatus.CANCELLED)
        record.next_retry_date = None
        record.updated_by_id = self._actor_id
        self._session.flush()
        logger.info(
            "occurrence_cancelled",
            extra={"scheduled_date": record.scheduled_date},
        )
        self._emit(EventType.OCCURRENCE_CANCELLED, rule_model, record)
        return record

    def abandon(
        self,
        record: RecurringExecutionModel,
        rule_model: RecurringTransactionModel,
        reason: str,
    ) -> RecurringExecutionModel:
        """Stop retrying a failed record; it stays FAILED for review."""
        self._transition(record, ExecutionStatus.FAILED)
        record.next_retry_date = None
        record.error_message = f"{record.error_message or ''} ({reason})".strip()
        record.updated_by_id = self._actor_id
        self._session.flush()
        self._report_exhausted(record, rule_model, record.error_code, reason=reason)
        return record

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find(self, rule_id: UUID, scheduled_date: date) -> RecurringExecutionModel | None:
        return self._session.execute(
            select(RecurringExecutionModel).where(
                RecurringExecutionModel.recurring_transaction_id == rule_id,
                RecurringExecutionModel.scheduled_date == scheduled_date,
            )
        ).scalar_one_or_none()

    def due_retries(self, as_of: date) -> Sequence[RecurringExecutionModel]:
        """Failed records whose retry date has arrived, oldest first."""
        return self._session.execute(
            select(RecurringExecutionModel)
            .where(
                RecurringExecutionModel.status == ExecutionStatus.FAILED.value,
                RecurringExecutionModel.next_retry_date.is_not(None),
                RecurringExecutionModel.next_retry_date <= as_of,
            )
            .order_by(
                RecurringExecutionModel.next_retry_date,
                RecurringExecutionModel.scheduled_date,
            )
        ).scalars().all()

    def open_records(self, rule_id: UUID) -> Sequence[RecurringExecutionModel]:
        """PENDING records plus FAILED records still scheduled for retry."""
        return self._session.execute(
            select(RecurringExecutionModel)
            .where(
                RecurringExecutionModel.recurring_transaction_id == rule_id,
                (
                    (RecurringExecutionModel.status == ExecutionStatus.PENDING.value)
                    | (
                        (RecurringExecutionModel.status == ExecutionStatus.FAILED.value)
                        & RecurringExecutionModel.next_retry_date.is_not(None)
                    )
                ),
            )
            .order_by(RecurringExecutionModel.scheduled_date)
        ).scalars().all()

    def history(
        self,
        rule_id: UUID | None = None,
        family_id: UUID | None = None,
    ) -> Sequence[RecurringExecutionModel]:
        """Execution records, newest scheduled date first."""
        stmt = select(RecurringExecutionModel)
        if family_id is not None:
            stmt = stmt.join(
                RecurringTransactionModel,
                RecurringExecutionModel.recurring_transaction_id
                == RecurringTransactionModel.id,
            ).where(RecurringTransactionModel.family_id == family_id)
        if rule_id is not None:
            stmt = stmt.where(RecurringExecutionModel.recurring_transaction_id == rule_id)
        stmt = stmt.order_by(
            RecurringExecutionModel.scheduled_date.desc(),
            RecurringExecutionModel.created_at.desc(),
        )
        return self._session.execute(stmt).scalars().all()

    def failures_for_review(
        self, family_id: UUID | None = None,
    ) -> Sequence[RecurringExecutionModel]:
        """Terminal failures: FAILED with no retry scheduled."""
        stmt = select(RecurringExecutionModel).where(
            RecurringExecutionModel.status == ExecutionStatus.FAILED.value,
            RecurringExecutionModel.next_retry_date.is_(None),
        )
        if family_id is not None:
            stmt = stmt.join(
                RecurringTransactionModel,
                RecurringExecutionModel.recurring_transaction_id
                == RecurringTransactionModel.id,
            ).where(RecurringTransactionModel.family_id == family_id)
        stmt = stmt.order_by(RecurringExecutionModel.scheduled_date.desc())
        return self._session.execute(stmt).scalars().all()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _transition(
        self,
        record: RecurringExecutionModel,
        target: ExecutionStatus,
    ) -> None:
        current = ExecutionStatus(record.status)
        if target not in VALID_TRANSITIONS[current]:
            raise InvalidExecutionTransitionError(
                str(record.id), current.value, target.value,
            )
        record.status = target.value

    def _report_exhausted(
        self,
        record: RecurringExecutionModel,
        rule_model: RecurringTransactionModel,
        error_code: str | None,
        reason: str | None = None,
    ) -> None:
        logger.warning(
            "retries_exhausted",
            extra={
                "scheduled_date": record.scheduled_date,
                "retry_count": record.retry_count,
                "error_code": error_code,
            },
        )
        self._emit(
            EventType.RETRIES_EXHAUSTED,
            rule_model,
            record,
            risk_level=RiskLevel.HIGH,
            error_code=error_code,
            retry_count=record.retry_count,
            reason=reason,
        )

    def _emit(
        self,
        event_type: EventType,
        rule_model: RecurringTransactionModel,
        record: RecurringExecutionModel,
        risk_level: RiskLevel = RiskLevel.LOW,
        **payload,
    ) -> None:
        emit_after_commit(
            self._session,
            self._sink,
            EngineEvent(
                event_type=event_type,
                occurred_at=self._clock.now(),
                rule_id=rule_model.id,
                family_id=rule_model.family_id,
                scheduled_date=record.scheduled_date,
                risk_level=risk_level,
                payload={"execution_id": str(record.id), **payload},
            ),
        )
