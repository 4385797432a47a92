"""Microsoft SQL Server database adapter implementation."""

import logging
from typing import Any

try:
    import pymssql
except ImportError:
    pymssql = None

from ...constants import DEFAULT_PORTS
from ...models import ConnectionDescriptor, QueryResult
from ..dialects import Dialect
from .base import BaseAdapter

logger = logging.getLogger(__name__)


class MSSQLAdapter(BaseAdapter):
    """SQL Server adapter using pymssql in autocommit mode."""

    dialect = Dialect.MSSQL
    begin_sql = "BEGIN TRANSACTION"
    commit_sql = "COMMIT TRANSACTION"
    rollback_sql = "ROLLBACK TRANSACTION"

    def __init__(self, descriptor: ConnectionDescriptor, timeout: float = 30.0, read_only: bool = False):
        if pymssql is None:
            raise ImportError(
                "pymssql is not installed. Install it with: pip install 'dbgateway[mssql]'"
            )
        super().__init__(descriptor, timeout, read_only)

    @property
    def port(self) -> int:
        return self.descriptor.port or DEFAULT_PORTS["mssql"]

    def _driver_errors(self):
        return (pymssql.Error,)

    def _is_alive(self, connection: Any) -> bool:
        native = getattr(connection, "_conn", None)
        return bool(getattr(native, "connected", True))

    def _is_disconnect(self, error: BaseException) -> bool:
        return isinstance(error, pymssql.InterfaceError) or "dbprocess is dead" in str(error).lower()

    def _open(self) -> Any:
        if self.read_only:
            # SQL Server has no session-level read-only switch; the lexical
            # read-only check is the only guard here.
            logger.debug("Read-only mode for SQL Server relies on statement checks")

        connection_params = {
            "server": self.host or "localhost",
            "port": str(self.port),
            "user": self.descriptor.user,
            "password": self.descriptor.password,
            "login_timeout": max(int(self.timeout), 1),
            "timeout": max(int(self.timeout), 1),
            "autocommit": True,
        }
        if self.database:
            connection_params["database"] = self.database
        return pymssql.connect(**connection_params)

    def _read_cursor(self, cursor: Any) -> QueryResult:
        """Keep the last result set that has columns.

        Batches such as ``SET STATISTICS XML ON; ...`` return the query rows
        followed by the plan as a separate result set.
        """
        result = super()._read_cursor(cursor)
        while cursor.nextset():
            next_result = super()._read_cursor(cursor)
            if next_result.columns:
                result = next_result
        return result
