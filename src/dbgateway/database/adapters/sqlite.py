"""SQLite database adapter implementation."""

import logging
import sqlite3
from typing import Any, Optional

from ...errors import GatewayError, ValidationError
from ..dialects import Dialect
from .base import BaseAdapter

logger = logging.getLogger(__name__)

_URL_PREFIXES = ("jdbc:sqlite:", "sqlite:///", "sqlite://", "sqlite:")


def sqlite_database_path(database: Optional[str], url: Optional[str], host: Optional[str]) -> str:
    """Resolve the SQLite file path from a descriptor's database, url or host."""
    if database:
        return database
    if url:
        for prefix in _URL_PREFIXES:
            if url.startswith(prefix):
                return url[len(prefix):]
        return url
    if host:
        return host
    return ":memory:"


class SQLiteAdapter(BaseAdapter):
    """SQLite adapter; opened read-only via URI when read-only mode is on."""

    dialect = Dialect.SQLITE

    @property
    def database_path(self) -> str:
        return sqlite_database_path(self.descriptor.database, self.descriptor.url, self.descriptor.host)

    @property
    def dsn(self) -> str:
        """Generate DSN string for logging."""
        return f"sqlite:///{self.database_path}"

    def _driver_errors(self):
        return (sqlite3.Error,)

    def _is_timeout(self, error: BaseException) -> bool:
        error_str = str(error).lower()
        return "timeout" in error_str or "locked" in error_str

    def _translate_error(self, error: BaseException, query: str) -> GatewayError:
        error_str = str(error).lower()
        # Check if it's a write attempt (read-only mode)
        if "readonly" in error_str or "attempt to write" in error_str:
            return ValidationError(
                f"Write operation blocked by database: {error}\n"
                f"  Hint: SQLite opened in read-only mode (URI parameter mode=ro)"
            )
        return super()._translate_error(error, query)

    def _open(self) -> Any:
        path = self.database_path
        if self.read_only and path != ":memory:":
            target, uri = f"file:{path}?mode=ro", True
        else:
            target, uri = path, False

        connection = sqlite3.connect(
            target,
            timeout=self.timeout,
            uri=uri,
            check_same_thread=False,  # Used from worker threads
            isolation_level=None,  # Autocommit; transactions are explicit BEGIN/COMMIT
        )
        # Set additional timeouts for queries
        connection.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")

        logger.info(
            f"Connected to SQLite database{' (read-only)' if self.read_only else ''}: {path}"
        )
        return connection
