"""PostgreSQL database adapter implementation."""

import logging
from typing import Any

try:
    import psycopg2
    import psycopg2.errors
except ImportError:
    psycopg2 = None

from ...constants import DEFAULT_PORTS
from ...models import ConnectionDescriptor
from ..dialects import Dialect
from .base import BaseAdapter

logger = logging.getLogger(__name__)

SSL_MODES = {
    "disable": "disable",
    "false": "disable",
    "require": "require",
    "true": "require",
    "verify-ca": "verify-ca",
    "verify-full": "verify-full",
}
SSL_FILE_PROPERTIES = ("sslrootcert", "sslcert", "sslkey")


def postgres_ssl_params(properties: dict[str, str]) -> dict[str, str]:
    """Map descriptor properties to libpq SSL parameters.

    Unrecognized or missing modes fall back to ``prefer`` (try TLS, accept
    plaintext).
    """
    raw_mode = (properties.get("sslmode") or properties.get("ssl") or "").strip().lower()
    params = {"sslmode": SSL_MODES.get(raw_mode, "prefer")}
    for key in SSL_FILE_PROPERTIES:
        if properties.get(key):
            params[key] = properties[key]
    return params


class PostgreSQLAdapter(BaseAdapter):
    """PostgreSQL adapter using psycopg2 in autocommit mode.

    Transactions are explicit BEGIN/COMMIT/ROLLBACK statements issued by
    the transaction manager.
    """

    dialect = Dialect.POSTGRES

    def __init__(self, descriptor: ConnectionDescriptor, timeout: float = 30.0, read_only: bool = False):
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 is not installed. Install it with: pip install psycopg2-binary"
            )
        super().__init__(descriptor, timeout, read_only)

    @property
    def port(self) -> int:
        return self.descriptor.port or DEFAULT_PORTS["postgresql"]

    def _driver_errors(self):
        return (psycopg2.Error,)

    def _is_timeout(self, error: BaseException) -> bool:
        if isinstance(error, psycopg2.errors.QueryCanceled):
            return True
        return super()._is_timeout(error)

    def _is_alive(self, connection: Any) -> bool:
        # psycopg2 sets closed to a non-zero value once the server is gone
        return connection.closed == 0

    def _is_disconnect(self, error: BaseException) -> bool:
        if isinstance(error, psycopg2.errors.QueryCanceled):
            return False
        return isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError))

    def _open(self) -> Any:
        conn_params = {
            "host": self.host or "localhost",
            "port": self.port,
            "connect_timeout": max(int(self.timeout), 1),
            "options": f"-c statement_timeout={int(self.timeout * 1000)}",  # milliseconds
        }
        if self.database:
            conn_params["dbname"] = self.database
        if self.descriptor.user:
            conn_params["user"] = self.descriptor.user
        if self.descriptor.password:
            conn_params["password"] = self.descriptor.password
        conn_params.update(postgres_ssl_params(self.descriptor.properties))

        connection = psycopg2.connect(**conn_params)
        connection.autocommit = True

        if self.read_only:
            # Enforce read-only mode at session level
            cursor = connection.cursor()
            cursor.execute("SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY")
            cursor.close()

        logger.info(f"Connected to PostgreSQL database: {self.database}@{self.host}")
        return connection
