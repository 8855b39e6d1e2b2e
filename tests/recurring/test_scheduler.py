"""
Tests for PeriodicScheduler and RecurringOrchestrator.

Uses a stub runner for loop mechanics and the real engine (SQLite) for the
orchestrator wiring.
"""

import threading
import time
from datetime import date
from uuid import uuid4

import pytest

from family_recurring.domain.types import PassSummary, PassTrigger
from family_recurring.orchestrator import RecurringOrchestrator
from family_recurring.services.collaborators import EventType
from family_recurring.services.scheduler import PeriodicScheduler

from tests.conftest import TEST_ACCOUNT_ID, TEST_FAMILY_ID, TEST_USER_ID


class _StubRunner:
    def __init__(self, fail=False):
        self.calls: list[tuple[date, PassTrigger]] = []
        self.fail = fail
        self.ran = threading.Event()

    def run_pass(self, as_of=None, trigger=PassTrigger.SCHEDULED):
        self.calls.append((as_of, trigger))
        self.ran.set()
        if self.fail:
            raise RuntimeError("database unreachable")
        return PassSummary(pass_id=uuid4(), as_of=as_of, trigger=trigger)


# =============================================================================
# PeriodicScheduler
# =============================================================================


class TestPeriodicScheduler:

    def test_tick_runs_scheduled_pass_for_today(self, clock):
        runner = _StubRunner()
        scheduler = PeriodicScheduler(runner, clock=clock)

        summary = scheduler.tick()

        assert runner.calls == [(date(2024, 1, 1), PassTrigger.SCHEDULED)]
        assert scheduler.last_summary is summary

    def test_trigger_now_is_manual(self, clock):
        runner = _StubRunner()
        summary = PeriodicScheduler(runner, clock=clock).trigger_now()
        assert summary.trigger == PassTrigger.MANUAL

    def test_tick_survives_runner_failure(self, clock, captured_logs):
        scheduler = PeriodicScheduler(_StubRunner(fail=True), clock=clock)
        assert scheduler.tick() is None
        assert any(r["message"] == "scheduler_tick_failed" for r in captured_logs())

    def test_trigger_now_propagates_failure(self, clock):
        scheduler = PeriodicScheduler(_StubRunner(fail=True), clock=clock)
        with pytest.raises(RuntimeError):
            scheduler.trigger_now()

    def test_follows_clock(self, clock):
        runner = _StubRunner()
        scheduler = PeriodicScheduler(runner, clock=clock)
        clock.advance_days(3)
        scheduler.tick()
        assert runner.calls[0][0] == date(2024, 1, 4)

    def test_start_and_stop(self, clock):
        runner = _StubRunner()
        scheduler = PeriodicScheduler(runner, clock=clock, tick_interval_seconds=3600)

        scheduler.start()
        try:
            assert runner.ran.wait(timeout=5)
            assert scheduler.is_running
        finally:
            scheduler.stop(timeout=5)

        assert not scheduler.is_running
        assert runner.calls[0][1] == PassTrigger.SCHEDULED

    def test_start_twice_keeps_one_thread(self, clock):
        scheduler = PeriodicScheduler(_StubRunner(), clock=clock, tick_interval_seconds=3600)
        scheduler.start()
        try:
            first = scheduler._thread
            scheduler.start()
            assert scheduler._thread is first
        finally:
            scheduler.stop(timeout=5)


# =============================================================================
# RecurringOrchestrator
# =============================================================================


@pytest.fixture
def orchestrator(session_factory, store, validator, sink, clock, tmp_path):
    config_path = tmp_path / "scheduler.yaml"
    config_path.write_text("retry:\n  max_retries: 2\nmax_iterations_per_rule: 50\n")
    orch = RecurringOrchestrator.from_session_factory(
        session_factory,
        store=store,
        validator=validator,
        event_sink=sink,
        config_path=config_path,
        clock=clock,
    )
    yield orch
    orch.shutdown()


class TestOrchestrator:

    def test_loads_config(self, orchestrator, tmp_path):
        assert orchestrator.config.retry.max_retries == 2
        assert orchestrator.config.max_iterations_per_rule == 50
        assert orchestrator.config.source == str(tmp_path / "scheduler.yaml")

    def test_create_then_run_now(self, orchestrator, session_factory, store):
        with session_factory() as session:
            orchestrator.rule_service(session, actor_id=TEST_USER_ID).create(
                family_id=TEST_FAMILY_ID,
                account_id=TEST_ACCOUNT_ID,
                description="Swim club",
                amount="25.00",
                transaction_type="expense",
                frequency="daily",
                start_date=date(2023, 12, 30),
                created_by=TEST_USER_ID,
            )
            session.commit()

        summary = orchestrator.run_now()

        assert summary.trigger == PassTrigger.MANUAL
        assert summary.as_of == date(2024, 1, 1)
        assert summary.processed_count == 3
        assert len(store.requests) == 3

    def test_scheduled_and_manual_share_runner(self, orchestrator):
        scheduler = orchestrator.create_scheduler()
        assert scheduler._runner is orchestrator.runner
        assert scheduler.trigger_now().trigger == PassTrigger.MANUAL
        assert orchestrator.run_scheduled(date(2024, 1, 1)).trigger == PassTrigger.SCHEDULED

    def test_rule_service_uses_shared_clock(self, orchestrator, session_factory):
        with session_factory() as session:
            service = orchestrator.rule_service(session)
            assert service.upcoming(TEST_FAMILY_ID) == []
        assert orchestrator.clock.today() == date(2024, 1, 1)

    def test_slow_sink_does_not_stretch_pass(self, session_factory, store, clock, tmp_path):
        class _SlowSink:
            def __init__(self):
                self.events = []

            def emit(self, event):
                time.sleep(0.5)
                self.events.append(event)

        slow = _SlowSink()
        orch = RecurringOrchestrator.from_session_factory(
            session_factory, store=store, event_sink=slow, clock=clock,
        )
        try:
            with session_factory() as session:
                orch.rule_service(session, actor_id=TEST_USER_ID).create(
                    family_id=TEST_FAMILY_ID,
                    account_id=TEST_ACCOUNT_ID,
                    description="Bus pass",
                    amount="3.00",
                    transaction_type="expense",
                    frequency="daily",
                    start_date=date(2023, 12, 30),
                    created_by=TEST_USER_ID,
                )
                session.commit()

            started = time.monotonic()
            summary = orch.run_now()
            elapsed = time.monotonic() - started
            orch.flush_events()
        finally:
            orch.shutdown()

        assert summary.processed_count == 3
        assert elapsed < 0.5
        assert [e.event_type for e in slow.events] == [
            EventType.OCCURRENCE_CREATED,
            EventType.OCCURRENCE_CREATED,
            EventType.OCCURRENCE_CREATED,
            EventType.PASS_COMPLETED,
        ]
