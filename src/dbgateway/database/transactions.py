"""Transaction lifecycle: one dedicated pooled adapter per open transaction."""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..constants import STALE_TRANSACTION_MS
from ..errors import NotFoundError, UnsupportedDriverError
from ..models import ConnectionDescriptor, QueryResult, Transaction, TransactionResult
from .adapters import BaseAdapter
from .connection import ConnectionPool, ConnectionPoolManager, run_blocking
from .dialects import POOLED_DRIVERS, classify_driver
from .logging import log_transaction

logger = logging.getLogger(__name__)


@dataclass
class _OpenTransaction:
    transaction: Transaction
    pool: ConnectionPool
    adapter: BaseAdapter
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def new_transaction_id() -> str:
    """``txn_<epoch-ms>_<8 hex chars>``"""
    return f"txn_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class TransactionManager:
    """Registry of open transactions.

    Transitions are strictly ``active -> committed | rolled_back``. An entry
    leaves the registry on its terminal transition, so acting on a finished
    or unknown id raises NotFoundError.
    """

    def __init__(
        self,
        pool_manager: ConnectionPoolManager,
        timeout: float,
        stale_after_ms: int = STALE_TRANSACTION_MS,
    ):
        self.pool_manager = pool_manager
        self.timeout = timeout
        self.stale_after_ms = stale_after_ms
        self._transactions: dict[str, _OpenTransaction] = {}

    def _new_id(self) -> str:
        transaction_id = new_transaction_id()
        while transaction_id in self._transactions:
            transaction_id = new_transaction_id()
        return transaction_id

    def _lookup(self, transaction_id: str) -> _OpenTransaction:
        entry = self._transactions.get(transaction_id)
        if entry is None or not entry.transaction.is_active:
            raise NotFoundError(f"Transaction not found or no longer active: {transaction_id}")
        return entry

    async def begin_transaction(self, descriptor: ConnectionDescriptor) -> TransactionResult:
        """Check out a dedicated adapter and issue BEGIN on it.

        Raises:
            UnsupportedDriverError: Dialect has no connection pool
            BackendError: BEGIN or the connection failed
        """
        dialect = classify_driver(descriptor.driver)
        if not dialect.is_pooled:
            raise UnsupportedDriverError(
                descriptor.driver,
                POOLED_DRIVERS,
                "transactions require a pooled driver",
            )

        pool = await self.pool_manager.get_pool(descriptor)
        adapter = await self.pool_manager.acquire(pool)
        try:
            await run_blocking(adapter.begin, timeout=self.timeout, what="BEGIN")
        except BaseException as e:
            await self.pool_manager.release(pool, adapter, discard=True)
            log_transaction("-", descriptor.id, "begin", success=False, error=str(e))
            raise

        transaction = Transaction(id=self._new_id(), connection_id=descriptor.id)
        self._transactions[transaction.id] = _OpenTransaction(transaction, pool, adapter)
        log_transaction(transaction.id, descriptor.id, "begin")
        return TransactionResult(
            transaction_id=transaction.id,
            status="started",
            message=f"Transaction started on {descriptor.name}",
        )

    async def execute_in_transaction(self, transaction_id: str, sql: str) -> QueryResult:
        """Run ``sql`` on the transaction's own adapter, one statement at a time.

        Raises:
            NotFoundError: Unknown or finished transaction
        """
        entry = self._lookup(transaction_id)
        async with entry.lock:
            if not entry.transaction.is_active:
                raise NotFoundError(f"Transaction not found or no longer active: {transaction_id}")
            return await run_blocking(entry.adapter.execute, sql, timeout=self.timeout, what="Query")

    async def commit_transaction(self, transaction_id: str) -> TransactionResult:
        return await self._finish(transaction_id, commit=True)

    async def rollback_transaction(self, transaction_id: str) -> TransactionResult:
        return await self._finish(transaction_id, commit=False)

    async def _finish(self, transaction_id: str, commit: bool) -> TransactionResult:
        operation = "commit" if commit else "rollback"
        entry = self._lookup(transaction_id)

        async with entry.lock:
            if not entry.transaction.is_active:
                raise NotFoundError(f"Transaction not found or no longer active: {transaction_id}")
            transaction = entry.transaction
            action = entry.adapter.commit if commit else entry.adapter.rollback

            try:
                await run_blocking(action, timeout=self.timeout, what=operation.upper())
            except BaseException as e:
                # The session state is unknown: destroy the adapter instead of reusing it
                transaction.status = "rolled_back"
                self._transactions.pop(transaction_id, None)
                await self.pool_manager.release(entry.pool, entry.adapter, discard=True)
                log_transaction(transaction_id, transaction.connection_id, operation, success=False, error=str(e))
                raise

            transaction.status = "committed" if commit else "rolled_back"
            self._transactions.pop(transaction_id, None)
            await self.pool_manager.release(entry.pool, entry.adapter)

        log_transaction(transaction_id, transaction.connection_id, operation)
        return TransactionResult(
            transaction_id=transaction_id,
            status=transaction.status,
            message=f"Transaction {'committed' if commit else 'rolled back'}",
        )

    async def cleanup_stale_transactions(self, max_age_ms: Optional[int] = None) -> int:
        """Force-roll-back transactions older than ``max_age_ms``.

        A failed rollback still counts: the entry is removed either way.

        Returns:
            Number of stale transactions removed
        """
        if max_age_ms is None:
            max_age_ms = self.stale_after_ms
        now = datetime.now(tz=timezone.utc)
        stale = [
            transaction_id
            for transaction_id, entry in self._transactions.items()
            if (now - entry.transaction.started_at).total_seconds() * 1000 > max_age_ms
        ]

        cleaned = 0
        for transaction_id in stale:
            try:
                await self.rollback_transaction(transaction_id)
            except NotFoundError:
                # Finished by its owner in the meantime
                continue
            except Exception as e:
                logger.warning(f"Rollback of stale transaction {transaction_id} failed: {e}")
            cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} stale transaction(s)")
        return cleaned

    async def rollback_all(self) -> int:
        """Best-effort rollback of every open transaction (used at shutdown).

        Returns:
            Number of transactions processed
        """
        processed = 0
        for transaction_id in list(self._transactions):
            try:
                await self.rollback_transaction(transaction_id)
            except NotFoundError:
                continue
            except Exception as e:
                logger.error(f"Error rolling back transaction {transaction_id}: {e}")
            processed += 1
        return processed

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        entry = self._transactions.get(transaction_id)
        return entry.transaction if entry else None

    def get_active_transactions(self) -> list[Transaction]:
        return [entry.transaction for entry in self._transactions.values() if entry.transaction.is_active]
