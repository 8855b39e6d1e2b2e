"""
PeriodicScheduler -- In-process polling loop for scheduler passes.

Contract:
    Runs ``SchedulerRunner.run_pass()`` every ``tick_interval_seconds`` on a
    background thread, and on demand through ``trigger_now()``.  Both paths
    go through the same runner, so a manual "process now" produces exactly
    the summary an automatic pass would.

Architecture: family_recurring/services.  Uses SchedulerRunner for passes.

Invariants enforced:
    - All dates from the injected Clock.
    - Graceful shutdown: ``stop()`` signals the loop, which exits after the
      pass in progress.
    - Passes never overlap within one scheduler: tick and trigger_now share
      a lock.
"""

from __future__ import annotations

import threading

from family_kernel.domain.clock import Clock, SystemClock
from family_kernel.logging_config import get_logger
from family_recurring.domain.types import PassSummary, PassTrigger
from family_recurring.services.runner import SchedulerRunner

logger = get_logger("recurring.scheduler")


class PeriodicScheduler:
    """Background thread that runs a pass on a fixed tick.

    Contract:
        - ``tick()`` runs one scheduled pass for today (public for testing).
        - ``trigger_now()`` runs one manual pass and returns its summary.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election); several
          processes are kept apart by the runner's row locks.
    """

    def __init__(
        self,
        runner: SchedulerRunner,
        clock: Clock | None = None,
        tick_interval_seconds: int = 3600,
    ):
        self._runner = runner
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._pass_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._last_summary: PassSummary | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> PassSummary | None:
        """Run a scheduled pass.  Returns None if the pass failed outright."""
        try:
            return self._run(PassTrigger.SCHEDULED)
        except Exception:
            logger.exception("scheduler_tick_failed")
            return None

    def trigger_now(self) -> PassSummary:
        """Run a manual pass immediately; errors propagate to the caller."""
        logger.info("manual_pass_requested")
        return self._run(PassTrigger.MANUAL)

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="recurring-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_summary(self) -> PassSummary | None:
        return self._last_summary

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run(self, trigger: PassTrigger) -> PassSummary:
        with self._pass_lock:
            summary = self._runner.run_pass(self._clock.today(), trigger=trigger)
            self._last_summary = summary
            return summary

    def _run_loop(self) -> None:
        """Background polling loop. Exits when stop_event is set."""
        while not self._stop_event.is_set():
            self.tick()
            # Wait for interval or until stopped
            self._stop_event.wait(timeout=self._tick_interval)
