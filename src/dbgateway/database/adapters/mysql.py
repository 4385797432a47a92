"""MySQL / MariaDB database adapter implementation."""

from typing import Any

import pymysql

from ...constants import DEFAULT_PORTS
from ..dialects import Dialect
from .base import BaseAdapter

# MySQL error codes that mean the statement ran out of time
TIMEOUT_ERROR_CODES = {
    2013,  # Lost connection to MySQL server during query (read_timeout)
    3024,  # Query execution was interrupted, maximum statement execution time exceeded
}

# Client error codes raised when the server connection is gone
DISCONNECT_ERROR_CODES = {
    2006,  # MySQL server has gone away
    2013,  # Lost connection to MySQL server during query
    2055,  # Lost connection to MySQL server at '%s', system error
}


def mysql_ssl_params(properties: dict[str, str]) -> dict[str, Any]:
    """Map descriptor properties to pymysql TLS keyword arguments.

    Modes: disabled/false (no TLS), required/true (TLS, no verification),
    verify_ca (verify server certificate), verify_identity (certificate and
    hostname). Default is no TLS.
    """
    raw_mode = (
        properties.get("sslMode")
        or properties.get("ssl-mode")
        or properties.get("sslmode")
        or properties.get("useSSL")
        or ""
    ).strip().lower().replace("-", "_")

    if raw_mode in ("disabled", "false"):
        return {"ssl_disabled": True}
    if raw_mode in ("", "preferred"):
        return {}

    ssl: dict[str, Any] = {}
    if properties.get("sslca"):
        ssl["ca"] = properties["sslca"]
    if properties.get("sslcert"):
        ssl["cert"] = properties["sslcert"]
    if properties.get("sslkey"):
        ssl["key"] = properties["sslkey"]

    if raw_mode in ("required", "true", "require"):
        ssl.update({"check_hostname": False, "verify_mode": False})
    elif raw_mode == "verify_ca":
        ssl.update({"check_hostname": False, "verify_mode": True})
    elif raw_mode in ("verify_identity", "verify_full"):
        ssl.update({"check_hostname": True, "verify_mode": True})
    else:
        return {}
    return {"ssl": ssl}


class MySQLAdapter(BaseAdapter):
    """MySQL-specific database adapter using pymysql driver."""

    dialect = Dialect.MYSQL
    begin_sql = "START TRANSACTION"

    @property
    def port(self) -> int:
        return self.descriptor.port or DEFAULT_PORTS["mysql"]

    def _driver_errors(self):
        return (pymysql.Error,)

    def _is_timeout(self, error: BaseException) -> bool:
        code = error.args[0] if error.args and isinstance(error.args[0], int) else None
        if code in TIMEOUT_ERROR_CODES:
            return True
        return super()._is_timeout(error)

    def _is_alive(self, connection: Any) -> bool:
        return bool(connection.open)

    def _is_disconnect(self, error: BaseException) -> bool:
        if isinstance(error, pymysql.err.InterfaceError):
            return True
        code = error.args[0] if error.args and isinstance(error.args[0], int) else None
        return code in DISCONNECT_ERROR_CODES

    def _open(self) -> Any:
        connection_params = {
            "host": self.host or "localhost",
            "port": self.port,
            "user": self.descriptor.user,
            "password": self.descriptor.password or "",
            "connect_timeout": max(int(self.timeout), 1),
            "read_timeout": max(int(self.timeout), 1),
            "write_timeout": max(int(self.timeout), 1),
            "charset": 'utf8mb4',
            "autocommit": True,
        }

        # Only add database parameter if specified
        if self.database:
            connection_params["database"] = self.database
        connection_params.update(mysql_ssl_params(self.descriptor.properties))

        connection = pymysql.connect(**connection_params)

        if self.read_only:
            # Set session to read-only (defense-in-depth)
            with connection.cursor() as cursor:
                cursor.execute("SET SESSION TRANSACTION READ ONLY")

        return connection
