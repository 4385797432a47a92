"""Query routing: classify the driver, pick an execution path, always clean up."""

import asyncio
import logging
import re
from typing import Optional

from ..errors import BackendError, GatewayError, GatewayTimeoutError, UnsupportedDriverError
from ..models import ConnectionDescriptor, QueryResult
from .adapters import BaseAdapter, CliFallbackError, CliFallbackExecutor
from .connection import AdapterFactory, ConnectionPool, ConnectionPoolManager, run_blocking
from .dialects import NATIVE_DRIVERS, Dialect, classify_driver
from .logging import log_resource_leak

logger = logging.getLogger(__name__)

_SELECT_START = re.compile(r"^\s*select\b", re.IGNORECASE)
_SELECT_HEAD = re.compile(r"^\s*select(\s+(?:distinct|all))?\s+", re.IGNORECASE)
_SELECT_TOP = re.compile(r"^\s*select\s+(?:(?:distinct|all)\s+)?top\b", re.IGNORECASE)
_ROW_VALUE = r"(?:\d+|\?|%s|:\w+|\$\d+)"
_EXISTING_LIMIT = re.compile(
    rf"\blimit\s+(?:{_ROW_VALUE}|all\b)|\boffset\s+{_ROW_VALUE}|\bfetch\s+(?:next|first)\b", re.IGNORECASE
)
_STRING_LITERALS = re.compile(r"'(?:[^']|'')*'")
_TRAILING_SEMICOLONS = re.compile(r";+\s*$")


def has_row_limit(sql: str) -> bool:
    """Whether a SELECT already limits its rows.

    Looks for a head ``TOP`` or a ``LIMIT``/``OFFSET`` followed by a count
    or placeholder, or ``FETCH NEXT/FIRST``, outside string literals.
    """
    stripped = _STRING_LITERALS.sub("''", sql)
    return bool(_SELECT_TOP.match(stripped) or _EXISTING_LIMIT.search(stripped))


def apply_row_limit(dialect: Dialect, sql: str, max_rows: Optional[int]) -> str:
    """Cap the rows a SELECT can return.

    Statements that are not SELECTs, or already carry LIMIT, OFFSET, TOP or
    FETCH NEXT, are returned unchanged.

    Examples:
        >>> apply_row_limit(Dialect.POSTGRES, "SELECT * FROM t;", 100)
        'SELECT * FROM t LIMIT 100'
        >>> apply_row_limit(Dialect.MSSQL, "select distinct a from t", 5)
        'SELECT distinct TOP 5 a from t'
    """
    if not max_rows or max_rows <= 0:
        return sql
    if not _SELECT_START.match(sql) or has_row_limit(sql):
        return sql

    if dialect.uses_top:
        return _SELECT_HEAD.sub(
            lambda match: f"SELECT{match.group(1) or ''} TOP {max_rows} ", sql, count=1
        )
    return f"{_TRAILING_SEMICOLONS.sub('', sql.strip())} LIMIT {max_rows}"


class QueryRouter:
    """Executes statements on the right backend for a connection descriptor."""

    def __init__(
        self,
        pool_manager: ConnectionPoolManager,
        adapter_factory: AdapterFactory,
        timeout: float,
        fallback: Optional[CliFallbackExecutor] = None,
    ):
        self.pool_manager = pool_manager
        self.timeout = timeout
        self.fallback = fallback
        self._adapter_factory = adapter_factory

    async def execute(
        self,
        descriptor: ConnectionDescriptor,
        sql: str,
        max_rows: Optional[int] = None,
        pooled: bool = False,
    ) -> QueryResult:
        """Execute ``sql`` against the descriptor's backend.

        Args:
            descriptor: Target connection
            sql: Statement to run (already validated by the caller)
            max_rows: Inject a row limit into SELECT statements
            pooled: Borrow from the connection's pool instead of opening an
                ad hoc connection (pooled dialects only)

        Returns:
            QueryResult whose ``query`` is the SQL that actually ran

        Raises:
            UnsupportedDriverError: Unknown driver and the CLI fallback failed
            BackendError: Connect or statement failure
            GatewayTimeoutError: Backend call exceeded the timeout
        """
        dialect = classify_driver(descriptor.driver)
        sql = apply_row_limit(dialect, sql, max_rows)

        if dialect is Dialect.UNKNOWN:
            return await self._execute_fallback(descriptor, sql)

        if pooled and dialect.is_pooled:
            pool = await self.pool_manager.get_pool(descriptor)
            if pool is not None:
                return await self._execute_pooled(pool, sql)

        return await self._execute_ad_hoc(descriptor, dialect, sql)

    async def _execute_ad_hoc(
        self, descriptor: ConnectionDescriptor, dialect: Dialect, sql: str
    ) -> QueryResult:
        adapter = self._adapter_factory(descriptor, dialect)
        try:
            await run_blocking(adapter.connect, timeout=self.timeout, what=f"Connecting to {descriptor.name}")
            return await self._run(adapter, sql)
        finally:
            await self._close_adapter(adapter)

    async def _execute_pooled(self, pool: ConnectionPool, sql: str) -> QueryResult:
        adapter = await self.pool_manager.acquire(pool)
        discard = False
        try:
            return await self._run(adapter, sql)
        except GatewayTimeoutError:
            # The worker may still be running on this connection
            discard = True
            raise
        except BackendError:
            discard = not adapter.is_connected
            raise
        finally:
            await self.pool_manager.release(pool, adapter, discard=discard)

    async def _run(self, adapter: BaseAdapter, sql: str) -> QueryResult:
        return await run_blocking(adapter.execute, sql, timeout=self.timeout, what="Query")

    async def execute_in_session(
        self, descriptor: ConnectionDescriptor, sql: str, setup: str, teardown: str
    ) -> QueryResult:
        """Run ``setup``, ``sql`` and ``teardown`` as separate batches on one connection.

        ``teardown`` also runs when ``sql`` fails. A pooled adapter is only
        returned to its pool when all three statements succeeded.

        Raises:
            UnsupportedDriverError: Dialect has no native adapter
            BackendError, GatewayTimeoutError
        """
        dialect = classify_driver(descriptor.driver)
        if not dialect.is_native:
            raise UnsupportedDriverError(
                descriptor.driver, NATIVE_DRIVERS, "session statements need a native adapter"
            )

        pool = await self.pool_manager.get_pool(descriptor) if dialect.is_pooled else None
        if pool is None:
            adapter = self._adapter_factory(descriptor, dialect)
            try:
                await run_blocking(adapter.connect, timeout=self.timeout, what=f"Connecting to {descriptor.name}")
                return await self._run_in_session(adapter, sql, setup, teardown)
            finally:
                await self._close_adapter(adapter)

        adapter = await self.pool_manager.acquire(pool)
        discard = True
        try:
            result = await self._run_in_session(adapter, sql, setup, teardown)
            discard = False
            return result
        finally:
            await self.pool_manager.release(pool, adapter, discard=discard)

    async def _run_in_session(self, adapter: BaseAdapter, sql: str, setup: str, teardown: str) -> QueryResult:
        await self._run(adapter, setup)
        try:
            result = await self._run(adapter, sql)
        except GatewayTimeoutError:
            # The connection is still busy; the caller discards it
            raise
        except GatewayError:
            await self._run(adapter, teardown)
            raise
        await self._run(adapter, teardown)
        return result

    async def _close_adapter(self, adapter: BaseAdapter) -> None:
        try:
            await asyncio.to_thread(adapter.close)
        except Exception as e:
            log_resource_leak(
                driver=adapter.descriptor.driver,
                host=adapter.host,
                database=adapter.database,
                error=str(e),
            )

    async def _execute_fallback(self, descriptor: ConnectionDescriptor, sql: str) -> QueryResult:
        if self.fallback is None:
            raise UnsupportedDriverError(
                descriptor.driver, NATIVE_DRIVERS, "no CLI fallback configured"
            )
        logger.info(f"No native adapter for driver '{descriptor.driver}', using CLI fallback")
        try:
            return await self.fallback.execute(descriptor, sql)
        except CliFallbackError as e:
            raise UnsupportedDriverError(descriptor.driver, NATIVE_DRIVERS, str(e)) from e
