"""
RuleLockRegistry -- single-writer guard per recurring transaction.

Contract:
    ``hold(rule_id)`` acquires the rule's lock without blocking and raises
    ``RuleBusyError`` when another pass in this process already owns it.
    Across processes the runner additionally takes a ``SELECT ... FOR
    UPDATE`` row lock where the database supports it.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from family_kernel.exceptions import RuleBusyError


class RuleLockRegistry:
    """In-process, non-blocking per-rule locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.Lock] = {}

    def _lock_for(self, rule_id: UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(rule_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[rule_id] = lock
            return lock

    @contextmanager
    def hold(self, rule_id: UUID) -> Iterator[None]:
        lock = self._lock_for(rule_id)
        if not lock.acquire(blocking=False):
            raise RuleBusyError(str(rule_id))
        try:
            yield
        finally:
            lock.release()

    def is_held(self, rule_id: UUID) -> bool:
        with self._guard:
            lock = self._locks.get(rule_id)
        return lock is not None and lock.locked()
