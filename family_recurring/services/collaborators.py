"""
External collaborator protocols and supporting types.

Contract:
    The engine reaches the outside world through three narrow protocols:

    - ``TransactionStore.create_transaction(request) -> UUID``
    - ``AccountValidator.check_account(request)`` (raises on a bad account)
    - ``EventSink.emit(event)`` (fire-and-forget)

    ``TransactionRequest`` and ``EngineEvent`` are the frozen payloads
    passed across those seams.

Architecture:
    family_recurring/services.  Only imports from family_recurring.domain,
    family_kernel logging, SQLAlchemy session events and stdlib.
"""

from __future__ import annotations

import contextvars
import queue
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session, SessionTransaction

from family_kernel.logging_config import get_logger
from family_recurring.domain.types import TransactionTemplate, TransactionType

logger = get_logger("recurring.events")

AUTO_DESCRIPTION_SUFFIX = " (Auto)"
AUTO_NOTES_MARKER = "Generated from recurring transaction"


# =============================================================================
# Transaction request
# =============================================================================


@dataclass(frozen=True)
class TransactionRequest:
    """A concrete transaction to create for one occurrence."""

    rule_id: UUID
    family_id: UUID
    account_id: UUID
    amount: Decimal
    transaction_type: TransactionType
    transaction_date: date
    description: str
    created_by: UUID
    category_id: UUID | None = None
    notes: str | None = None

    @classmethod
    def for_occurrence(
        cls,
        rule_id: UUID,
        template: TransactionTemplate,
        scheduled_date: date,
    ) -> TransactionRequest:
        """Build the request for ``scheduled_date``, marking it as generated."""
        if template.notes:
            notes = f"{template.notes} - {AUTO_NOTES_MARKER}"
        else:
            notes = AUTO_NOTES_MARKER
        return cls(
            rule_id=rule_id,
            family_id=template.family_id,
            account_id=template.account_id,
            amount=template.amount,
            transaction_type=template.transaction_type,
            transaction_date=scheduled_date,
            description=f"{template.description}{AUTO_DESCRIPTION_SUFFIX}",
            created_by=template.created_by,
            category_id=template.category_id,
            notes=notes,
        )


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class TransactionStore(Protocol):
    """Creates concrete transactions in the family ledger.

    Raising ``MaterializationError`` (or a subclass) reports a typed failure;
    any other exception is wrapped as a retryable failure by the materializer.
    """

    def create_transaction(self, request: TransactionRequest) -> UUID:
        ...


@runtime_checkable
class AccountValidator(Protocol):
    """Checks that the target account can take the transaction.

    Raises ``AccountUnavailableError`` when the account is gone or inactive
    (permanent) and ``InsufficientFundsError`` when an expense exceeds the
    balance (retryable).
    """

    def check_account(self, request: TransactionRequest) -> None:
        ...


class AcceptAllAccounts:
    """Validator used when the store enforces account rules itself."""

    def check_account(self, request: TransactionRequest) -> None:
        return None


# =============================================================================
# Events
# =============================================================================


class EventType(str, Enum):
    """Notable engine transitions reported to the event sink."""

    OCCURRENCE_CREATED = "occurrence_created"
    OCCURRENCE_FAILED = "occurrence_failed"
    RETRIES_EXHAUSTED = "retries_exhausted"
    SERIES_EXHAUSTED = "series_exhausted"
    OCCURRENCE_CANCELLED = "occurrence_cancelled"
    PASS_COMPLETED = "pass_completed"


class RiskLevel(str, Enum):
    LOW = "LOW"
    HIGH = "HIGH"


@dataclass(frozen=True)
class EngineEvent:
    """One event for audit or notification consumers."""

    event_type: EventType
    occurred_at: datetime
    rule_id: UUID | None = None
    family_id: UUID | None = None
    scheduled_date: date | None = None
    risk_level: RiskLevel = RiskLevel.LOW
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class EventSink(Protocol):
    """Receives engine events.  Must not block the pass for long."""

    def emit(self, event: EngineEvent) -> None:
        ...


class LoggingEventSink:
    """Default sink: one structured log line per event."""

    def emit(self, event: EngineEvent) -> None:
        extra: dict[str, Any] = {
            "event_type": event.event_type.value,
            "risk_level": event.risk_level.value,
            "occurred_at": event.occurred_at,
        }
        if event.rule_id is not None:
            extra["recurring_transaction_id"] = str(event.rule_id)
        if event.family_id is not None:
            extra["event_family_id"] = str(event.family_id)
        if event.scheduled_date is not None:
            extra["scheduled_date"] = event.scheduled_date
        extra.update(event.payload)
        logger.info("engine_event", extra=extra)


def emit_safely(sink: EventSink, event: EngineEvent) -> None:
    """Deliver ``event``; sink failures are logged and never propagate."""
    try:
        sink.emit(event)
    except Exception:
        logger.exception(
            "event_sink_failed",
            extra={"event_type": event.event_type.value},
        )


# =============================================================================
# Asynchronous delivery
# =============================================================================


_STOP = object()


class QueuedEventSink:
    """Delivers events to ``sink`` from a background thread.

    ``emit`` never waits on the wrapped sink.  The queue holds at most
    ``maxsize`` undelivered events; when it is full the new event is dropped
    and logged.  ``close()`` drains what is queued, then stops the worker.
    Each event is delivered inside the log context it was emitted from.
    """

    def __init__(self, sink: EventSink, maxsize: int = 1000):
        self._sink = sink
        self._maxsize = maxsize
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._worker = threading.Thread(
            target=self._drain, name="recurring-events", daemon=True,
        )
        self._worker.start()

    def emit(self, event: EngineEvent) -> None:
        if self._closed:
            emit_safely(self._sink, event)
            return
        try:
            self._queue.put_nowait((contextvars.copy_context(), event))
        except queue.Full:
            logger.warning(
                "event_dropped",
                extra={
                    "event_type": event.event_type.value,
                    "queue_size": self._maxsize,
                },
            )

    def flush(self) -> None:
        """Block until every queued event has been handed to the sink."""
        self._queue.join()

    def close(self, timeout: float | None = 10.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put((None, _STOP))
        self._worker.join(timeout)
        if self._worker.is_alive():
            logger.warning(
                "event_queue_not_drained",
                extra={"pending_events": self._queue.qsize()},
            )

    def _drain(self) -> None:
        while True:
            context, event = self._queue.get()
            try:
                if event is _STOP:
                    return
                context.run(emit_safely, self._sink, event)
            finally:
                self._queue.task_done()


# =============================================================================
# Post-commit delivery
# =============================================================================


_PENDING_EVENTS = "recurring_pending_events"


def emit_after_commit(session: Session, sink: EventSink, event: EngineEvent) -> None:
    """Hold ``event`` until ``session`` commits; drop it if the work is lost.

    Consumers only hear about records that were actually persisted.
    """
    session.info.setdefault(_PENDING_EVENTS, []).append((sink, event))
    if not sa_event.contains(session, "after_commit", _deliver_pending):
        sa_event.listen(session, "after_commit", _deliver_pending)
        sa_event.listen(session, "after_soft_rollback", _discard_pending)


def _deliver_pending(session: Session) -> None:
    for sink, event in session.info.pop(_PENDING_EVENTS, []):
        emit_safely(sink, event)


def _discard_pending(session: Session, previous_transaction: SessionTransaction) -> None:
    dropped = session.info.pop(_PENDING_EVENTS, [])
    if dropped:
        logger.info(
            "events_discarded_on_rollback",
            extra={"event_types": [event.event_type.value for _, event in dropped]},
        )
