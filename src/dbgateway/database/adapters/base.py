"""Abstract base class for database adapters."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from ...constants import REDACTED
from ...errors import BackendError, GatewayError, GatewayTimeoutError
from ...models import ConnectionDescriptor, QueryResult
from ..dialects import Dialect
from ..logging import QueryTimer, log_connection, log_query_execution


class BaseAdapter(ABC):
    """Abstract base class for dialect-specific adapters.

    Each adapter wraps exactly one DB-API connection and turns the driver's
    result shape into the canonical QueryResult. Adapters are blocking; the
    router and transaction manager run them in worker threads.
    """

    dialect: Dialect = Dialect.UNKNOWN
    begin_sql = "BEGIN"
    commit_sql = "COMMIT"
    rollback_sql = "ROLLBACK"

    def __init__(self, descriptor: ConnectionDescriptor, timeout: float, read_only: bool = False):
        """Initialize adapter with connection parameters.

        Args:
            descriptor: Connection descriptor (host, credentials, properties)
            timeout: Connect and statement timeout in seconds
            read_only: Enforce read-only mode at session level where supported
        """
        self.descriptor = descriptor
        self.timeout = timeout
        self.read_only = read_only
        self.connection: Optional[Any] = None
        self._lost = False

    @property
    def host(self) -> Optional[str]:
        return self.descriptor.host

    @property
    def database(self) -> Optional[str]:
        return self.descriptor.database

    @property
    def port(self) -> Optional[int]:
        return self.descriptor.port

    @property
    def dsn(self) -> str:
        """Connection target for logging (never includes the password)."""
        user_part = f"{self.descriptor.user}@" if self.descriptor.user else ""
        port_part = f":{self.port}" if self.port else ""
        return f"{self.dialect.value}://{user_part}{self.host or 'localhost'}{port_part}/{self.database or ''}"

    @property
    def is_connected(self) -> bool:
        """Whether the connection is open and has not been lost."""
        if self.connection is None or self._lost:
            return False
        return self._is_alive(self.connection)

    def _is_alive(self, connection: Any) -> bool:
        """Driver-level liveness check; no round trip to the server."""
        return True

    def _is_disconnect(self, error: BaseException) -> bool:
        """Whether a driver error means the connection itself is gone."""
        return False

    @abstractmethod
    def _open(self) -> Any:
        """Open and configure the native DB-API connection."""

    @abstractmethod
    def _driver_errors(self) -> tuple[type[BaseException], ...]:
        """Exception types raised by the native driver."""

    def _is_timeout(self, error: BaseException) -> bool:
        message = str(error).lower()
        return "timeout" in message or "timed out" in message or "canceling statement" in message

    def _scrub(self, message: str) -> str:
        """Remove the password from a driver message."""
        password = self.descriptor.password
        if password:
            message = message.replace(password, REDACTED)
        return message

    def _translate_error(self, error: BaseException, query: str) -> GatewayError:
        message = self._scrub(str(error).strip())
        if self._is_timeout(error):
            return GatewayTimeoutError(
                f"Query exceeded timeout ({self.timeout}s): {message}\n"
                f"  Query: {query[:100]}{'...' if len(query) > 100 else ''}"
            )
        return BackendError(
            f"{self.dialect.value} query failed: {message}",
            driver=self.descriptor.driver,
            host=self.host,
            database=self.database,
        )

    def connect(self) -> None:
        """Establish database connection.

        Raises:
            BackendError: If connection or authentication fails
            GatewayTimeoutError: If the connect timeout expires
        """
        timer = QueryTimer()
        try:
            with timer:
                self.connection = self._open()
            self._lost = False
        except self._driver_errors() as e:
            message = self._scrub(str(e).strip())
            log_connection(self.dsn, success=False, error=message, duration=timer.duration)
            if self._is_timeout(e):
                raise GatewayTimeoutError(
                    f"Timed out connecting to {self.dialect.value} after {self.timeout}s: {message}"
                ) from e
            raise BackendError(
                f"Failed to connect to {self.dialect.value}: {message}",
                driver=self.descriptor.driver,
                host=self.host,
                database=self.database,
            ) from e
        log_connection(self.dsn, success=True, duration=timer.duration)

    def _read_cursor(self, cursor: Any) -> QueryResult:
        if cursor.description:
            columns = [str(column[0]) for column in cursor.description]
            rows = [list(row) for row in cursor.fetchall()]
            return QueryResult(columns=columns, rows=rows, row_count=len(rows))
        return QueryResult(columns=[], rows=[], row_count=max(cursor.rowcount or 0, 0))

    def execute(self, query: str) -> QueryResult:
        """Execute one statement and return the canonical result.

        Raises:
            BackendError: If not connected or the driver rejects the statement
            GatewayTimeoutError: If the statement exceeds the timeout
        """
        if self.connection is None:
            raise BackendError(
                "Not connected to database. Call connect() first.",
                driver=self.descriptor.driver,
                host=self.host,
                database=self.database,
            )

        timer = QueryTimer()
        try:
            with timer:
                cursor = self.connection.cursor()
                try:
                    cursor.execute(query)
                    result = self._read_cursor(cursor)
                finally:
                    cursor.close()
        except self._driver_errors() as e:
            error = self._translate_error(e, query)
            if self._is_disconnect(e):
                self._lost = True
            log_query_execution(
                query=query,
                dsn=self.dsn,
                success=False,
                error=str(error),
                duration=timer.duration,
            )
            raise error from e

        log_query_execution(
            query=query,
            dsn=self.dsn,
            success=True,
            row_count=result.row_count,
            duration=timer.duration,
        )
        result.execution_time = timer.duration_ms
        result.query = query
        return result

    def begin(self) -> None:
        self.execute(self.begin_sql)

    def commit(self) -> None:
        self.execute(self.commit_sql)

    def rollback(self) -> None:
        self.execute(self.rollback_sql)

    def close(self) -> None:
        """Close the connection.

        Close failures propagate so callers can log them as leaks.
        """
        connection, self.connection = self.connection, None
        if connection is not None:
            connection.close()

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
