"""
SchedulerRunner -- one batch pass over all due recurring transactions.

Contract:
    ``run_pass(as_of)`` first re-attempts failed occurrences whose retry
    date has arrived, then catches up every active series whose cursor is
    on or before ``as_of``, and returns a ``PassSummary``.

Architecture: family_recurring/services.  Uses family_recurring.domain for
    pure date advancement and exhaustion checks, ExecutionTracker for record
    lifecycles and Materializer for the store call.

Invariants enforced:
    - One session and one commit per occurrence, so a crash mid catch-up
      keeps the occurrences already processed.
    - The cursor only moves forward, from the previous cursor, and moves
      even when the occurrence failed (the failure is retried separately).
    - A rule is processed by at most one pass at a time: RuleLockRegistry
      in process, ``SELECT ... FOR UPDATE`` on PostgreSQL.
    - Catch-up per rule is bounded by ``max_iterations_per_rule``.
    - A failure in one rule never aborts the pass.
    - Re-running a pass for the same ``as_of`` with no state change
      processes nothing.
    - Occurrence events reach the sink only after their commit succeeds.

Failure modes (per rule, folded into the summary):
    - RuleBusyError -- another pass holds the rule; reported, not counted.
    - InvalidRuleError / SafetyCapExceededError -- rule aborted for this
      pass and counted as a failure.  The rule stays active.
    - MaterializationError -- occurrence recorded as failed.
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from functools import partial
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from family_config.schema import SchedulerConfig
from family_kernel.db.base import SYSTEM_ACTOR_ID
from family_kernel.db.engine import supports_row_locks
from family_kernel.domain.clock import Clock, SystemClock
from family_kernel.exceptions import (
    MaterializationError,
    RecurrenceError,
    RuleBusyError,
    SafetyCapExceededError,
)
from family_kernel.logging_config import LogContext, get_logger
from family_recurring.domain.advancer import next_occurrence, validate_rule
from family_recurring.domain.guard import (
    MAX_OCCURRENCES_REACHED,
    exhaustion_reason,
)
from family_recurring.domain.retry import RetryPolicy
from family_recurring.domain.types import ExecutionStatus, PassSummary, PassTrigger
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
    emit_safely,
)
from family_recurring.services.locks import RuleLockRegistry
from family_recurring.services.materializer import Materializer
from family_recurring.services.tracker import ExecutionTracker

logger = get_logger("recurring.runner")


@dataclass
class _Tally:
    """Mutable per-rule counters merged into the pass summary."""

    processed: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: _Tally) -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.retried += other.retried
        self.skipped += other.skipped
        self.errors.extend(other.errors)


class SchedulerRunner:
    """Runs scheduler passes.

    Contract:
        - ``run_pass()`` processes retries, then due series, and reports.
        - ``due_rule_ids()`` lists the series a pass would catch up.

    Non-goals:
        - Does NOT own a background thread -- see PeriodicScheduler.
        - Does NOT decide when passes run -- callers supply ``as_of``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        materializer: Materializer,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        lock_registry: RuleLockRegistry | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._session_factory = session_factory
        self._materializer = materializer
        self._config = config or SchedulerConfig()
        self._clock = clock or SystemClock()
        self._sink = event_sink or LoggingEventSink()
        self._locks = lock_registry or RuleLockRegistry()
        self._actor_id = actor_id
        self._retry_policy = RetryPolicy.from_config(self._config)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_pass(
        self,
        as_of: date | None = None,
        trigger: PassTrigger = PassTrigger.SCHEDULED,
    ) -> PassSummary:
        as_of = as_of or self._clock.today()
        pass_id = uuid4()
        started_at = self._clock.now()
        start_time = time.monotonic()

        with LogContext.bind(pass_id=str(pass_id), actor_id=str(self._actor_id)):
            logger.info(
                "pass_started",
                extra={"as_of": as_of, "trigger": trigger.value},
            )

            tally = _Tally()
            for rule_id, record_ids in self._due_retries(as_of).items():
                tally.merge(self._guarded(
                    rule_id, partial(self._retry_rule, rule_id, record_ids, as_of),
                ))

            rule_ids = self.due_rule_ids(as_of)
            if self._config.max_workers > 1 and len(rule_ids) > 1:
                tally.merge(self._catch_up_parallel(rule_ids, as_of))
            else:
                for rule_id in rule_ids:
                    tally.merge(self._guarded(
                        rule_id, partial(self._catch_up, rule_id, as_of),
                    ))

            duration_ms = int((time.monotonic() - start_time) * 1000)
            summary = PassSummary(
                pass_id=pass_id,
                as_of=as_of,
                trigger=trigger,
                processed_count=tally.processed,
                failed_count=tally.failed,
                retried_count=tally.retried,
                skipped_count=tally.skipped,
                error_messages=tuple(tally.errors),
                started_at=started_at,
                completed_at=self._clock.now(),
                duration_ms=duration_ms,
            )

            logger.info(
                "pass_completed",
                extra={
                    "as_of": as_of,
                    "trigger": trigger.value,
                    "processed_count": summary.processed_count,
                    "failed_count": summary.failed_count,
                    "retried_count": summary.retried_count,
                    "skipped_count": summary.skipped_count,
                    "duration_ms": duration_ms,
                },
            )
            emit_safely(
                self._sink,
                EngineEvent(
                    event_type=EventType.PASS_COMPLETED,
                    occurred_at=summary.completed_at,
                    risk_level=RiskLevel.HIGH if summary.has_failures else RiskLevel.LOW,
                    payload={
                        "pass_id": str(pass_id),
                        "as_of": as_of,
                        "trigger": trigger.value,
                        **summary.to_dict(),
                    },
                ),
            )
        return summary

    def due_rule_ids(self, as_of: date) -> list[UUID]:
        """Active series whose cursor is on or before ``as_of``."""
        with self._session_factory() as session:
            return list(session.execute(
                select(RecurringTransactionModel.id)
                .where(
                    RecurringTransactionModel.is_active == True,  # noqa: E712
                    RecurringTransactionModel.next_execution_date <= as_of,
                )
                .order_by(
                    RecurringTransactionModel.next_execution_date,
                    RecurringTransactionModel.id,
                )
            ).scalars().all())

    # -------------------------------------------------------------------------
    # Per-rule isolation
    # -------------------------------------------------------------------------

    def _guarded(self, rule_id: UUID, work: Callable[[_Tally], None]) -> _Tally:
        """Run ``work`` under the rule's lock; fold its errors into a tally."""
        tally = _Tally()
        with LogContext.bind(rule_id=str(rule_id)):
            try:
                with self._locks.hold(rule_id):
                    work(tally)
            except RuleBusyError as exc:
                logger.warning("rule_busy")
                tally.errors.append(str(exc))
            except RecurrenceError as exc:
                logger.error("rule_aborted", exc_info=True)
                tally.failed += 1
                tally.errors.append(str(exc))
            except Exception as exc:
                logger.exception("rule_processing_failed")
                tally.failed += 1
                tally.errors.append(f"Recurring transaction {rule_id}: {exc}")
        return tally

    def _catch_up_parallel(self, rule_ids: list[UUID], as_of: date) -> _Tally:
        tally = _Tally()
        with ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="recurring-runner",
        ) as pool:
            futures = [
                # Each worker gets a copy of the pass log context
                pool.submit(
                    contextvars.copy_context().run,
                    self._guarded,
                    rule_id,
                    partial(self._catch_up, rule_id, as_of),
                )
                for rule_id in rule_ids
            ]
            for future in futures:
                tally.merge(future.result())
        return tally

    # -------------------------------------------------------------------------
    # Catch-up
    # -------------------------------------------------------------------------

    def _catch_up(self, rule_id: UUID, as_of: date, tally: _Tally) -> None:
        """Process every occurrence of one series up to ``as_of``."""
        cap = self._config.max_iterations_per_rule
        iterations = 0

        while True:
            with self._session_factory() as session:
                rule_model = self._load_rule(session, rule_id)
                if rule_model is None:
                    return

                rule = rule_model.to_rule()
                if rule.next_execution_date > as_of:
                    return
                if exhaustion_reason(rule) is not None:
                    if rule_model.is_active:
                        self._deactivate_exhausted(session, rule_model)
                        session.commit()
                    return

                if iterations >= cap:
                    raise SafetyCapExceededError(str(rule_id), iterations, cap)
                validate_rule(rule)
                iterations += 1

                stop = self._process_occurrence(session, rule_model, as_of, tally)
                session.commit()
                if stop:
                    return

    def _process_occurrence(
        self,
        session: Session,
        rule_model: RecurringTransactionModel,
        as_of: date,
        tally: _Tally,
    ) -> bool:
        """Handle the occurrence at the cursor.  Returns True to stop the loop."""
        tracker = self._tracker(session)
        scheduled = rule_model.next_execution_date
        record = tracker.open(rule_model, scheduled)

        if record.status != ExecutionStatus.PENDING.value:
            # Slot already attempted by an earlier pass
            self._advance(session, rule_model, scheduled)
            return False

        session.refresh(rule_model, attribute_names=["is_active"])
        if not rule_model.is_active:
            # Paused after the pass listed it: this one slot is recorded as
            # skipped, later slots wait for the series to resume
            tracker.skip(record, "recurring transaction deactivated")
            tally.skipped += 1
            self._advance(session, rule_model, scheduled)
            return True

        self._attempt(tracker, record, rule_model, as_of, tally)
        self._advance(session, rule_model, scheduled)
        return False

    def _attempt(
        self,
        tracker: ExecutionTracker,
        record: RecurringExecutionModel,
        rule_model: RecurringTransactionModel,
        as_of: date,
        tally: _Tally,
    ) -> None:
        try:
            transaction_id = self._materializer.materialize(
                rule_model.id, rule_model.to_template(), record.scheduled_date,
            )
        except MaterializationError as exc:
            tracker.fail(record, rule_model, exc, as_of)
            tally.failed += 1
            tally.errors.append(str(exc))
        else:
            tracker.complete(record, rule_model, transaction_id, as_of)
            tally.processed += 1

    def _advance(
        self,
        session: Session,
        rule_model: RecurringTransactionModel,
        previous: date,
    ) -> None:
        """Move the cursor past ``previous``; deactivate an exhausted series."""
        following = next_occurrence(rule_model.to_rule(), previous)
        if following > rule_model.next_execution_date:
            rule_model.next_execution_date = following
            rule_model.updated_by_id = self._actor_id
        if rule_model.is_active and exhaustion_reason(rule_model.to_rule()) is not None:
            self._deactivate_exhausted(session, rule_model)
        session.flush()

    def _deactivate_exhausted(
        self,
        session: Session,
        rule_model: RecurringTransactionModel,
    ) -> None:
        reason = exhaustion_reason(rule_model.to_rule())
        rule_model.is_active = False
        rule_model.updated_by_id = self._actor_id
        session.flush()
        logger.info(
            "series_exhausted",
            extra={
                "reason": reason,
                "execution_count": rule_model.execution_count,
                "next_execution_date": rule_model.next_execution_date,
            },
        )
        emit_after_commit(
            session,
            self._sink,
            EngineEvent(
                event_type=EventType.SERIES_EXHAUSTED,
                occurred_at=self._clock.now(),
                rule_id=rule_model.id,
                family_id=rule_model.family_id,
                payload={
                    "reason": reason,
                    "execution_count": rule_model.execution_count,
                },
            ),
        )

    # -------------------------------------------------------------------------
    # Retries
    # -------------------------------------------------------------------------

    def _due_retries(self, as_of: date) -> dict[UUID, list[UUID]]:
        """Record ids due for retry, grouped by recurring transaction."""
        with self._session_factory() as session:
            records = self._tracker(session).due_retries(as_of)
            grouped: dict[UUID, list[UUID]] = {}
            for record in records:
                grouped.setdefault(record.recurring_transaction_id, []).append(record.id)
            return grouped

    def _retry_rule(
        self,
        rule_id: UUID,
        record_ids: list[UUID],
        as_of: date,
        tally: _Tally,
    ) -> None:
        for record_id in record_ids:
            with self._session_factory() as session:
                rule_model = self._load_rule(session, rule_id)
                if rule_model is None:
                    return
                record = session.get(RecurringExecutionModel, record_id)
                if (
                    record is None
                    or record.status != ExecutionStatus.FAILED.value
                    or record.next_retry_date is None
                    or record.next_retry_date > as_of
                ):
                    continue

                tracker = self._tracker(session)
                reason = exhaustion_reason(rule_model.to_rule())
                if reason == MAX_OCCURRENCES_REACHED:
                    tracker.abandon(record, rule_model, "series reached max_occurrences")
                    session.commit()
                    continue
                if not rule_model.is_active and reason is None:
                    # Paused by the user; retry once it is re-activated
                    logger.info(
                        "retry_deferred_rule_paused",
                        extra={"scheduled_date": record.scheduled_date},
                    )
                    return

                tally.retried += 1
                logger.info(
                    "retry_started",
                    extra={
                        "scheduled_date": record.scheduled_date,
                        "retry_count": record.retry_count,
                    },
                )
                self._attempt(tracker, record, rule_model, as_of, tally)
                if rule_model.is_active and exhaustion_reason(rule_model.to_rule()) is not None:
                    self._deactivate_exhausted(session, rule_model)
                session.commit()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _tracker(self, session: Session) -> ExecutionTracker:
        return ExecutionTracker(
            session,
            retry_policy=self._retry_policy,
            clock=self._clock,
            event_sink=self._sink,
            actor_id=self._actor_id,
        )

    @staticmethod
    def _load_rule(session: Session, rule_id: UUID) -> RecurringTransactionModel | None:
        stmt = select(RecurringTransactionModel).where(
            RecurringTransactionModel.id == rule_id,
        )
        if supports_row_locks(session):
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()
