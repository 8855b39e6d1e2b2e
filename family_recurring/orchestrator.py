"""
RecurringOrchestrator -- DI container for the recurring transaction engine.

Contract:
    Wires configuration, clock, external collaborators, the shared per-rule
    lock registry and the materializer into SchedulerRunner,
    PeriodicScheduler and RecurringRuleService.  Single place where the
    engine's dependencies are composed.

Architecture: family_recurring (top-level).  The canonical entry point for
    running passes and managing recurring transactions.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - Manual and scheduled passes share one runner (and one lock registry),
      so they cannot process the same rule concurrently.
    - The caller's event sink sits behind a bounded queue, so a slow
      consumer never stretches a pass.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from pathlib import Path
from uuid import UUID

from sqlalchemy.orm import Session

from family_config import get_scheduler_config
from family_config.schema import SchedulerConfig
from family_kernel.db.base import SYSTEM_ACTOR_ID
from family_kernel.domain.clock import Clock, SystemClock
from family_kernel.logging_config import get_logger
from family_recurring.domain.types import PassSummary, PassTrigger
from family_recurring.services.collaborators import (
    AccountValidator,
    EventSink,
    LoggingEventSink,
    QueuedEventSink,
    TransactionStore,
)
from family_recurring.services.locks import RuleLockRegistry
from family_recurring.services.materializer import Materializer
from family_recurring.services.rule_service import RecurringRuleService
from family_recurring.services.runner import SchedulerRunner
from family_recurring.services.scheduler import PeriodicScheduler

logger = get_logger("recurring.orchestrator")


class RecurringOrchestrator:
    """DI container for the recurring transaction engine.

    Contract:
        - ``from_session_factory()`` loads configuration and wires everything.
        - ``runner`` is the shared SchedulerRunner.
        - ``run_now()`` / ``run_scheduled()`` run one pass.
        - ``create_scheduler()`` returns a PeriodicScheduler for background use.
        - ``rule_service(session)`` returns a session-bound catalogue service.

    Non-goals:
        - Does NOT start the scheduler automatically -- caller decides.
        - Does NOT manage session lifecycle for ``rule_service`` -- caller
          controls commits.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: TransactionStore,
        validator: AccountValidator | None = None,
        event_sink: EventSink | None = None,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or SchedulerConfig()
        self._clock = clock or SystemClock()
        self._sink = QueuedEventSink(
            event_sink or LoggingEventSink(),
            maxsize=self._config.event_queue_size,
        )
        self._actor_id = actor_id
        self._locks = RuleLockRegistry()
        self._materializer = Materializer(
            store,
            validator=validator,
            timeout_seconds=self._config.materialization_timeout_seconds,
            max_workers=self._config.max_workers,
        )
        self._runner = SchedulerRunner(
            session_factory=session_factory,
            materializer=self._materializer,
            config=self._config,
            clock=self._clock,
            event_sink=self._sink,
            lock_registry=self._locks,
            actor_id=actor_id,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session_factory(
        cls,
        session_factory: Callable[[], Session],
        store: TransactionStore,
        validator: AccountValidator | None = None,
        event_sink: EventSink | None = None,
        config_path: Path | str | None = None,
        clock: Clock | None = None,
    ) -> RecurringOrchestrator:
        """Create a fully wired orchestrator, loading the YAML configuration.

        Args:
            session_factory: Callable returning a new Session per call.
            store: External transaction store.
            validator: Optional account check; defaults to accepting all.
            event_sink: Optional sink; defaults to structured log lines.
            config_path: Optional scheduler YAML; defaults to the packaged one.
            clock: Optional clock for deterministic testing.
        """
        config = get_scheduler_config(config_path)
        orchestrator = cls(
            session_factory=session_factory,
            store=store,
            validator=validator,
            event_sink=event_sink,
            config=config,
            clock=clock,
        )
        logger.info(
            "recurring_orchestrator_created",
            extra={
                "config_source": config.source,
                "max_workers": config.max_workers,
            },
        )
        return orchestrator

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def runner(self) -> SchedulerRunner:
        return self._runner

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    def run_now(self, as_of: date | None = None) -> PassSummary:
        """Manual "process now" pass."""
        return self._runner.run_pass(as_of, trigger=PassTrigger.MANUAL)

    def run_scheduled(self, as_of: date | None = None) -> PassSummary:
        """Pass started by an external (cron) trigger."""
        return self._runner.run_pass(as_of, trigger=PassTrigger.SCHEDULED)

    def create_scheduler(self) -> PeriodicScheduler:
        return PeriodicScheduler(
            runner=self._runner,
            clock=self._clock,
            tick_interval_seconds=self._config.tick_interval_seconds,
        )

    # -------------------------------------------------------------------------
    # Catalogue
    # -------------------------------------------------------------------------

    def rule_service(self, session: Session, actor_id: UUID | None = None) -> RecurringRuleService:
        return RecurringRuleService(
            session,
            clock=self._clock,
            event_sink=self._sink,
            config=self._config,
            actor_id=actor_id or self._actor_id,
        )

    def flush_events(self) -> None:
        """Wait until every emitted event has reached the sink."""
        self._sink.flush()

    def shutdown(self) -> None:
        """Release the materializer's worker threads and drain pending events."""
        self._materializer.shutdown()
        self._sink.close()
