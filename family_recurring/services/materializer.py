"""
Materializer -- turns a due occurrence into a concrete transaction.

Contract:
    ``materialize(rule_id, template, scheduled_date)`` validates the account,
    calls the transaction store under a per-attempt timeout and returns the
    new transaction id.  Every failure surfaces as a ``MaterializationError``
    subclass so the tracker can decide on retries:

    - validator / store raised ``MaterializationError`` -> re-raised as is
    - store exceeded ``timeout_seconds`` -> ``MaterializationTimeoutError``
    - anything else -> wrapped in a retryable ``MaterializationError``

    A timed-out store call is not interrupted; its worker thread finishes in
    the background and its result is discarded.  The pool that ran it is
    retired so later attempts never queue behind a hung call.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import date
from uuid import UUID

from family_kernel.exceptions import MaterializationError, MaterializationTimeoutError
from family_kernel.logging_config import get_logger
from family_recurring.domain.types import TransactionTemplate
from family_recurring.services.collaborators import (
    AcceptAllAccounts,
    AccountValidator,
    TransactionRequest,
    TransactionStore,
)

logger = get_logger("recurring.materializer")


class Materializer:
    """Account check plus timed transaction store call."""

    def __init__(
        self,
        store: TransactionStore,
        validator: AccountValidator | None = None,
        timeout_seconds: float = 30.0,
        max_workers: int = 1,
    ):
        self._store = store
        self._validator = validator or AcceptAllAccounts()
        self._timeout = timeout_seconds
        self._max_workers = max(max_workers, 1)
        self._pool_lock = threading.Lock()
        self._pool = self._new_pool()

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="recurring-materializer",
        )

    def _retire_pool(self, pool: ThreadPoolExecutor) -> None:
        with self._pool_lock:
            if self._pool is pool:
                self._pool = self._new_pool()
        pool.shutdown(wait=False)

    def materialize(
        self,
        rule_id: UUID,
        template: TransactionTemplate,
        scheduled_date: date,
    ) -> UUID:
        request = TransactionRequest.for_occurrence(rule_id, template, scheduled_date)

        try:
            self._validator.check_account(request)
        except MaterializationError:
            raise
        except Exception as exc:
            raise MaterializationError(
                str(rule_id), scheduled_date, f"account check failed: {exc}",
            ) from exc

        with self._pool_lock:
            pool = self._pool
            future = pool.submit(self._store.create_transaction, request)
        try:
            transaction_id = future.result(timeout=self._timeout)
        except FuturesTimeoutError as exc:
            future.cancel()
            self._retire_pool(pool)
            logger.warning(
                "materialization_timed_out",
                extra={
                    "scheduled_date": scheduled_date,
                    "timeout_seconds": self._timeout,
                },
            )
            raise MaterializationTimeoutError(
                str(rule_id), scheduled_date, self._timeout,
            ) from exc
        except MaterializationError:
            raise
        except Exception as exc:
            raise MaterializationError(
                str(rule_id), scheduled_date, f"transaction store error: {exc}",
            ) from exc

        logger.debug(
            "transaction_materialized",
            extra={
                "scheduled_date": scheduled_date,
                "transaction_id": str(transaction_id),
            },
        )
        return transaction_id

    def shutdown(self, wait: bool = False) -> None:
        with self._pool_lock:
            pool = self._pool
        pool.shutdown(wait=wait)
