"""The Gateway: one object owning pools, transactions and their lifecycle."""

import asyncio
import logging
from typing import Any, Optional, Union

from .config import GatewayConfig
from .database.adapters import BaseAdapter, CliFallbackExecutor, create_adapter
from .database.connection import AdapterFactory, ConnectionPool, ConnectionPoolManager
from .database.dialects import Dialect, classify_driver
from .database.explain import build_explain_query, explain_executes, explain_session, parse_explain_output
from .database.formatting import format_size
from .database.logging import QueryTimer, log_query_execution, redact_secrets
from .database.router import QueryRouter
from .database.schema_diff import (
    build_columns_query,
    build_indexes_query,
    build_list_tables_query,
    compare_schemas,
    generate_migration_script,
    parse_index_rows,
    parse_table_schema,
)
from .database.transactions import TransactionManager
from .database.validation import (
    enforce_read_only,
    sanitize_connection_id,
    sanitize_identifier,
    split_statements,
    validate_query,
)
from .errors import BackendError, GatewayError, NotFoundError, ValidationError
from .models import (
    ConnectionDescriptor,
    DatabaseStats,
    ExplainResult,
    PoolStats,
    QueryResult,
    SchemaDiff,
    TableSchema,
    TransactionResult,
)

logger = logging.getLogger(__name__)

ConnectionRef = Union[str, ConnectionDescriptor]

# Statements run by test_connection
TEST_QUERIES = {
    Dialect.POSTGRES: "SELECT version()",
    Dialect.MYSQL: "SELECT version()",
    Dialect.MSSQL: "SELECT @@VERSION",
    Dialect.SQLITE: "SELECT sqlite_version()",
    Dialect.UNKNOWN: "SELECT 1",
}

WRITE_PREFIXES = ("insert", "update", "delete")

# Database size in bytes, per dialect
SIZE_QUERIES = {
    Dialect.POSTGRES: "SELECT pg_database_size(current_database())",
    Dialect.MYSQL: (
        "SELECT COALESCE(SUM(DATA_LENGTH + INDEX_LENGTH), 0) FROM information_schema.TABLES "
        "WHERE TABLE_SCHEMA = DATABASE()"
    ),
    Dialect.MSSQL: "SELECT SUM(CAST(size AS BIGINT)) * 8192 FROM sys.database_files",
    Dialect.SQLITE: "SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()",
}

# Server uptime in seconds, per dialect
UPTIME_QUERIES = {
    Dialect.POSTGRES: "SELECT CAST(EXTRACT(EPOCH FROM now() - pg_postmaster_start_time()) AS BIGINT)",
    Dialect.MYSQL: (
        "SELECT VARIABLE_VALUE FROM performance_schema.global_status WHERE VARIABLE_NAME = 'Uptime'"
    ),
    Dialect.MSSQL: "SELECT DATEDIFF(SECOND, sqlserver_start_time, SYSDATETIME()) FROM sys.dm_os_sys_info",
}


def _require_prefix(statement: str, prefixes: tuple[str, ...], message: str) -> None:
    """Reject ``statement`` unless every part of it starts with one of ``prefixes``."""
    for part in split_statements(statement) or [statement]:
        if not " ".join(part.lower().split()).startswith(prefixes):
            raise ValidationError(message)


def _first_value(result: QueryResult) -> Any:
    return result.rows[0][0] if result.rows and result.rows[0] else None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class Gateway:
    """Database gateway engine.

    Owns the pool registry, the transaction registry and the background
    stale-transaction sweep. Use as an async context manager, or call
    ``start()`` and ``shutdown()`` explicitly.
    """

    # Re-exported so callers only need the Gateway
    validate_query = staticmethod(validate_query)
    enforce_read_only = staticmethod(enforce_read_only)
    sanitize_identifier = staticmethod(sanitize_identifier)
    build_explain_query = staticmethod(build_explain_query)
    parse_explain_output = staticmethod(parse_explain_output)
    generate_migration_script = staticmethod(generate_migration_script)

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        connections: Optional[dict[str, ConnectionDescriptor]] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        fallback: Optional[CliFallbackExecutor] = None,
    ):
        """Initialize the gateway.

        Args:
            config: Tunables (defaults when omitted)
            connections: Known connection descriptors keyed by id
            adapter_factory: Builds an unconnected adapter for a descriptor
                and dialect (defaults to the native adapters)
            fallback: Executor for drivers without a native adapter
                (defaults to the CLI at ``config.cli_path`` if set)
        """
        self.config = config or GatewayConfig()
        self.connections: dict[str, ConnectionDescriptor] = dict(connections or {})

        factory = adapter_factory or self._create_adapter
        if fallback is None and self.config.cli_path:
            fallback = CliFallbackExecutor(self.config.cli_path, self.config.cli_timeout)

        self.pools = ConnectionPoolManager(self.config.pool, factory, timeout=self.config.query_timeout)
        self.router = QueryRouter(self.pools, factory, self.config.query_timeout, fallback)
        self.transactions = TransactionManager(
            self.pools, self.config.query_timeout, self.config.stale_transaction_ms
        )
        self._cleanup_task: Optional[asyncio.Task] = None

    def _create_adapter(self, descriptor: ConnectionDescriptor, dialect: Dialect) -> BaseAdapter:
        return create_adapter(
            descriptor,
            dialect,
            timeout=self.config.query_timeout,
            read_only=self.config.read_only or descriptor.readonly,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the periodic stale-transaction sweep."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="dbgateway-cleanup")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                await self.transactions.cleanup_stale_transactions()
            except Exception as e:
                logger.error(f"Stale transaction sweep failed: {e}")

    async def shutdown(self) -> None:
        """Roll back open transactions, close pools, stop the sweep.

        Every step runs even if an earlier one fails.
        """
        logger.info("Shutting down database gateway")
        try:
            rolled_back = await self.transactions.rollback_all()
            if rolled_back:
                logger.info(f"Rolled back {rolled_back} open transaction(s)")
        except Exception as e:
            logger.error(f"Error rolling back transactions during shutdown: {e}")

        try:
            await self.pools.close_all_pools()
        except Exception as e:
            logger.error(f"Error closing pools during shutdown: {e}")

        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Cleanup task ended with error: {e}")

    async def __aenter__(self) -> "Gateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # =========================================================================
    # Connections
    # =========================================================================

    def register_connection(self, descriptor: ConnectionDescriptor) -> None:
        self.connections[descriptor.id] = descriptor

    def get_connection(self, connection_id: str) -> ConnectionDescriptor:
        """Look up a registered descriptor.

        Raises:
            ValidationError: If the id has no valid characters
            NotFoundError: If no connection has this id
        """
        key = sanitize_connection_id(connection_id)
        descriptor = self.connections.get(key)
        if descriptor is None:
            raise NotFoundError(f"Connection not found: {key}")
        return descriptor

    def _resolve(self, connection: ConnectionRef) -> ConnectionDescriptor:
        if isinstance(connection, ConnectionDescriptor):
            return connection
        return self.get_connection(connection)

    def list_connections(self) -> list[dict[str, Any]]:
        """All descriptors, with secrets redacted."""
        return [redact_secrets(descriptor) for descriptor in self.connections.values()]

    def get_connection_info(self, connection_id: str) -> dict[str, Any]:
        descriptor = self.get_connection(connection_id)
        info = redact_secrets(descriptor)
        info["dialect"] = classify_driver(descriptor.driver).value
        stats = self.pools.get_stats(descriptor.id)
        info["pool"] = stats.to_dict() if stats else None
        return info

    def _is_read_only(self, descriptor: Optional[ConnectionDescriptor]) -> bool:
        return self.config.read_only or bool(descriptor and descriptor.readonly)

    def _check_query(self, descriptor: Optional[ConnectionDescriptor], sql: str, read_only: bool) -> None:
        reason = validate_query(sql)
        if reason is None and (read_only or self._is_read_only(descriptor)):
            # Every statement of a batch must pass, not just the first
            for statement in split_statements(sql) or [sql]:
                reason = enforce_read_only(statement)
                if reason is not None:
                    break
        if reason is not None:
            log_query_execution(
                query=sql or "",
                dsn=f"connection://{descriptor.id if descriptor else 'unknown'}",
                success=False,
                error=reason.splitlines()[0],
                blocked=True,
            )
            raise ValidationError(reason)

    # =========================================================================
    # Query execution
    # =========================================================================

    async def execute(
        self,
        connection: ConnectionRef,
        sql: str,
        read_only: bool = False,
        max_rows: Optional[int] = None,
        pooled: bool = True,
    ) -> QueryResult:
        """Validate and execute one statement.

        Args:
            connection: Connection id or descriptor
            sql: Statement text
            read_only: Also apply the read-only allow-list (always applied
                when the gateway or the connection is read-only)
            max_rows: Row limit injected into SELECT statements
            pooled: Borrow from the connection's pool where the dialect has one

        Raises:
            ValidationError: Statement rejected by a safety check
            NotFoundError: Unknown connection id
            UnsupportedDriverError, BackendError, GatewayTimeoutError
        """
        descriptor = self._resolve(connection)
        self._check_query(descriptor, sql, read_only)
        return await self.router.execute(descriptor, sql, max_rows=max_rows, pooled=pooled)

    async def write(self, connection: ConnectionRef, sql: str) -> QueryResult:
        """Execute an INSERT, UPDATE or DELETE statement.

        Raises:
            ValidationError: Not a data-modification statement, or rejected
                by the safety checks
        """
        statement = (sql or "").strip()
        if statement.lower().startswith("select"):
            raise ValidationError("Use execute_query for SELECT operations")
        _require_prefix(
            statement, WRITE_PREFIXES, "Only INSERT, UPDATE, or DELETE operations are allowed with write_query"
        )
        return await self.execute(connection, statement)

    async def create_table(self, connection: ConnectionRef, sql: str) -> QueryResult:
        """Execute a CREATE TABLE statement.

        Raises:
            ValidationError: Any statement in ``sql`` is not a CREATE TABLE
        """
        statement = (sql or "").strip()
        _require_prefix(statement, ("create table",), "Only CREATE TABLE statements are allowed")
        return await self.execute(connection, statement)

    async def alter_table(self, connection: ConnectionRef, sql: str) -> QueryResult:
        """Execute an ALTER TABLE statement.

        Raises:
            ValidationError: Any statement in ``sql`` is not an ALTER TABLE
        """
        statement = (sql or "").strip()
        _require_prefix(statement, ("alter table",), "Only ALTER TABLE statements are allowed")
        return await self.execute(connection, statement)

    async def drop_table(self, connection: ConnectionRef, table_name: str) -> QueryResult:
        """Drop an existing table. Confirmation is the caller's concern.

        Raises:
            ValidationError: Invalid table name or read-only connection
            NotFoundError: Table does not exist
        """
        descriptor = self._resolve(connection)
        table = sanitize_identifier(table_name)
        await self.get_table_schema(descriptor, table)
        return await self.execute(descriptor, f"DROP TABLE {table}")

    async def test_connection(self, connection: ConnectionRef) -> dict[str, Any]:
        """Open a fresh connection, run the dialect's test query, report."""
        descriptor = self._resolve(connection)
        dialect = classify_driver(descriptor.driver)
        timer = QueryTimer()
        report: dict[str, Any] = {
            "connection_id": descriptor.id,
            "name": descriptor.name,
            "driver": descriptor.driver,
            "dialect": dialect.value,
        }
        try:
            with timer:
                result = await self.router.execute(descriptor, TEST_QUERIES[dialect], pooled=False)
        except GatewayError as e:
            report.update(success=False, error=str(e), response_time_ms=timer.duration_ms)
            return report

        version = result.rows[0][0] if result.rows and result.rows[0] else None
        report.update(success=True, version=version, response_time_ms=timer.duration_ms)
        return report

    # =========================================================================
    # Transactions
    # =========================================================================

    async def begin_transaction(self, connection: ConnectionRef) -> TransactionResult:
        descriptor = self._resolve(connection)
        return await self.transactions.begin_transaction(descriptor)

    async def execute_in_transaction(self, transaction_id: str, sql: str) -> QueryResult:
        transaction = self.transactions.get_transaction(transaction_id)
        if transaction is None or not transaction.is_active:
            raise NotFoundError(f"Transaction not found or no longer active: {transaction_id}")
        self._check_query(self.connections.get(transaction.connection_id), sql, read_only=False)
        return await self.transactions.execute_in_transaction(transaction_id, sql)

    async def commit_transaction(self, transaction_id: str) -> TransactionResult:
        return await self.transactions.commit_transaction(transaction_id)

    async def rollback_transaction(self, transaction_id: str) -> TransactionResult:
        return await self.transactions.rollback_transaction(transaction_id)

    # =========================================================================
    # Pools
    # =========================================================================

    async def get_pool(self, connection: ConnectionRef) -> Optional[ConnectionPool]:
        return await self.pools.get_pool(self._resolve(connection))

    def get_stats(self, connection_id: str) -> Optional[PoolStats]:
        return self.pools.get_stats(connection_id)

    async def close_pool(self, connection_id: str) -> None:
        await self.pools.close_pool(connection_id)

    async def close_all_pools(self) -> None:
        await self.pools.close_all_pools()

    # =========================================================================
    # Schema
    # =========================================================================

    async def _list_tables(self, descriptor: ConnectionDescriptor, schema: Optional[str]) -> list[str]:
        dialect = classify_driver(descriptor.driver)
        listing = await self.router.execute(descriptor, build_list_tables_query(dialect, schema), pooled=True)
        positions = {str(column).lower(): i for i, column in enumerate(listing.columns)}
        name_at = positions.get("table_name", 0)
        return [str(row[name_at]) for row in listing.rows]

    async def list_tables(self, connection: ConnectionRef, schema: Optional[str] = None) -> list[str]:
        return await self._list_tables(self._resolve(connection), schema)

    async def get_table_schema(
        self, connection: ConnectionRef, table_name: str, schema: Optional[str] = None
    ) -> TableSchema:
        descriptor = self._resolve(connection)
        dialect = classify_driver(descriptor.driver)

        columns = await self.router.execute(
            descriptor, build_columns_query(dialect, table_name, schema), pooled=True
        )
        if not columns.rows:
            raise NotFoundError(f"Table not found: {table_name} (connection {descriptor.id})")

        indexes = {}
        indexes_query = build_indexes_query(dialect, table_name)
        if indexes_query is not None:
            index_result = await self.router.execute(descriptor, indexes_query, pooled=True)
            indexes = parse_index_rows(index_result.columns, index_result.rows)
        return parse_table_schema(table_name, columns.columns, columns.rows, indexes)

    async def introspect_schema(
        self,
        connection: ConnectionRef,
        tables: Optional[list[str]] = None,
        schema: Optional[str] = None,
    ) -> list[TableSchema]:
        """Column and index metadata for ``tables`` (default: every user table).

        Listed tables whose names are not plain identifiers are skipped.
        Requested tables that do not exist on this connection are left out
        of the result.
        """
        descriptor = self._resolve(connection)
        explicit = tables is not None
        if tables is None:
            tables = await self._list_tables(descriptor, schema)

        schemas = []
        for table in tables:
            try:
                schemas.append(await self.get_table_schema(descriptor, table, schema))
            except ValidationError:
                if explicit:
                    raise
                logger.warning(f"Skipping table with unsupported name: {table!r}")
            except NotFoundError:
                logger.info(f"Table {table!r} does not exist on {descriptor.id}")
        return schemas

    async def compare_schemas(
        self,
        source: ConnectionRef,
        target: ConnectionRef,
        tables: Optional[list[str]] = None,
        schema: Optional[str] = None,
    ) -> SchemaDiff:
        source_descriptor = self._resolve(source)
        target_descriptor = self._resolve(target)
        source_tables, target_tables = await asyncio.gather(
            self.introspect_schema(source_descriptor, tables, schema),
            self.introspect_schema(target_descriptor, tables, schema),
        )
        return compare_schemas(source_tables, target_tables, source_descriptor.id, target_descriptor.id)

    # =========================================================================
    # Explain
    # =========================================================================

    async def explain(
        self, connection: ConnectionRef, sql: str, analyze: bool = False, fmt: str = "text"
    ) -> ExplainResult:
        """Run the dialect's EXPLAIN for ``sql`` and normalize the plan.

        Forms that really execute the statement (``analyze``, SQL Server's
        structured plans) must also pass the read-only allow-list.
        """
        descriptor = self._resolve(connection)
        dialect = classify_driver(descriptor.driver)
        self._check_query(descriptor, sql, read_only=explain_executes(dialect, analyze=analyze, fmt=fmt))

        explain_sql = build_explain_query(dialect, sql, analyze=analyze, fmt=fmt)
        session = explain_session(dialect, fmt=fmt)
        if session is None:
            result = await self.router.execute(descriptor, explain_sql, pooled=True)
        else:
            setup, teardown = session
            result = await self.router.execute_in_session(descriptor, explain_sql, setup, teardown)
        return parse_explain_output(dialect, result.rows, fmt=fmt, columns=result.columns, query=sql)

    # =========================================================================
    # Statistics
    # =========================================================================

    async def _optional_stat(self, descriptor: ConnectionDescriptor, query: Optional[str]) -> Any:
        if query is None:
            return None
        try:
            result = await self.router.execute(descriptor, query, pooled=True)
        except BackendError as e:
            logger.warning(f"Statistics query failed on {descriptor.id}: {e}")
            return None
        return _first_value(result)

    async def get_database_stats(self, connection: ConnectionRef) -> DatabaseStats:
        """Table count, server version, size and uptime of a database.

        Size and uptime need catalog privileges that some accounts lack;
        they are reported as None when their query fails.

        Raises:
            NotFoundError: Unknown connection id
            BackendError, GatewayTimeoutError: Version or table listing failed
        """
        descriptor = self._resolve(connection)
        dialect = classify_driver(descriptor.driver)

        timer = QueryTimer()
        with timer:
            version = await self.router.execute(descriptor, TEST_QUERIES[dialect], pooled=True)
        tables = await self._list_tables(descriptor, None)
        size_bytes = _as_int(await self._optional_stat(descriptor, SIZE_QUERIES.get(dialect)))
        uptime = _as_int(await self._optional_stat(descriptor, UPTIME_QUERIES.get(dialect)))

        server_version = _first_value(version)
        return DatabaseStats(
            connection_id=descriptor.id,
            table_count=len(tables),
            server_version=str(server_version) if server_version is not None else None,
            size_bytes=size_bytes,
            total_size=format_size(size_bytes),
            uptime_seconds=uptime,
            connection_time=timer.duration_ms,
        )
