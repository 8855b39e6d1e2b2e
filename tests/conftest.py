"""
Pytest fixtures for the recurring transaction engine test suite.

Provides:
- Structured logging configured once per session, LogContext cleared per test
- ``captured_logs`` for asserting on JSON log lines
- In-memory SQLite engine / session factory with all tables created
- Deterministic clock and fake external collaborators
- ``make_recurring`` helper that stores a recurring transaction and commits
"""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from family_config.schema import SchedulerConfig
from family_kernel.db.base import Base
from family_kernel.db.engine import build_engine
from family_kernel.domain.clock import DeterministicClock
from family_kernel.exceptions import (
    AccountUnavailableError,
    InsufficientFundsError,
    MaterializationError,
)
from family_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from family_recurring.domain.types import TransactionType

# Registers recurring_transactions / recurring_transaction_executions
import family_recurring.models  # noqa: F401
from family_recurring.services.collaborators import EngineEvent, EventType, TransactionRequest
from family_recurring.services.materializer import Materializer
from family_recurring.services.rule_service import RecurringRuleService
from family_recurring.services.runner import SchedulerRunner

TEST_FAMILY_ID = UUID("11111111-1111-1111-1111-111111111111")
TEST_ACCOUNT_ID = UUID("22222222-2222-2222-2222-222222222222")
TEST_USER_ID = UUID("33333333-3333-3333-3333-333333333333")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture family_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, runner):
            runner.run_pass(date(2024, 1, 1))
            logs = captured_logs()
            assert any(r["message"] == "pass_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("family_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeTransactionStore:
    """Records every request; can be told to fail for given dates."""

    def __init__(self):
        self.requests: list[TransactionRequest] = []
        self.failures: dict[date, Exception] = {}
        self.fail_always: Exception | None = None

    def create_transaction(self, request: TransactionRequest) -> UUID:
        error = self.fail_always or self.failures.get(request.transaction_date)
        if error is not None:
            raise error
        self.requests.append(request)
        return uuid4()

    @property
    def dates(self) -> list[date]:
        return [r.transaction_date for r in self.requests]


class FakeAccountValidator:
    """Rejects unavailable accounts and expenses above a balance."""

    def __init__(self):
        self.unavailable: set[UUID] = set()
        self.balances: dict[UUID, Decimal] = {}

    def check_account(self, request: TransactionRequest) -> None:
        if request.account_id in self.unavailable:
            raise AccountUnavailableError(
                str(request.rule_id), request.transaction_date, str(request.account_id),
            )
        balance = self.balances.get(request.account_id)
        if (
            balance is not None
            and request.transaction_type == TransactionType.EXPENSE
            and balance < request.amount
        ):
            raise InsufficientFundsError(
                str(request.rule_id), request.transaction_date, str(request.account_id),
            )


class RecordingEventSink:
    def __init__(self):
        self.events: list[EngineEvent] = []

    def emit(self, event: EngineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[EngineEvent]:
        return [e for e in self.events if e.event_type == event_type]


def store_error(message: str = "ledger unavailable") -> MaterializationError:
    """A retryable failure as a store would raise it."""
    return MaterializationError("store", date(2000, 1, 1), message)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock.on(date(2024, 1, 1))


@pytest.fixture
def config():
    return SchedulerConfig()


@pytest.fixture
def store():
    return FakeTransactionStore()


@pytest.fixture
def validator():
    return FakeAccountValidator()


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def materializer(store, validator):
    m = Materializer(store, validator=validator, timeout_seconds=5.0)
    yield m
    m.shutdown()


@pytest.fixture
def runner(session_factory, materializer, config, clock, sink):
    return SchedulerRunner(
        session_factory=session_factory,
        materializer=materializer,
        config=config,
        clock=clock,
        event_sink=sink,
    )


@pytest.fixture
def rule_service(db_session, clock, sink, config):
    return RecurringRuleService(db_session, clock=clock, event_sink=sink, config=config)


@pytest.fixture
def make_recurring(session_factory, clock, sink, config):
    """Create and commit a recurring transaction; returns its DTO.

    Defaults: daily expense of 50.00 starting 2024-01-01.
    """

    def _make(**overrides):
        params = dict(
            family_id=TEST_FAMILY_ID,
            account_id=TEST_ACCOUNT_ID,
            description="Allowance",
            amount=Decimal("50.00"),
            transaction_type=TransactionType.EXPENSE,
            frequency="daily",
            start_date=date(2024, 1, 1),
            created_by=TEST_USER_ID,
        )
        params.update(overrides)
        with session_factory() as session:
            service = RecurringRuleService(session, clock=clock, event_sink=sink, config=config)
            created = service.create(**params)
            session.commit()
        return created

    return _make


@pytest.fixture
def load_rule(session_factory):
    """Fresh read of a recurring transaction DTO by id."""

    def _load(rule_id: UUID):
        with session_factory() as session:
            return RecurringRuleService(session).get(rule_id)

    return _load


@pytest.fixture
def load_history(session_factory):
    """Fresh read of execution records for a rule, oldest first."""

    def _load(rule_id: UUID):
        with session_factory() as session:
            records = RecurringRuleService(session).execution_history(rule_id=rule_id)
        return sorted(records, key=lambda r: r.scheduled_date)

    return _load
