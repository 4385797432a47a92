"""Database adapters for the natively supported dialects."""

from ...errors import UnsupportedDriverError
from ...models import ConnectionDescriptor
from ..dialects import NATIVE_DRIVERS, Dialect
from .base import BaseAdapter
from .cli_fallback import CliFallbackError, CliFallbackExecutor
from .mssql import MSSQLAdapter
from .mysql import MySQLAdapter
from .postgresql import PostgreSQLAdapter
from .sqlite import SQLiteAdapter

__all__ = [
    "BaseAdapter",
    "CliFallbackError",
    "CliFallbackExecutor",
    "MSSQLAdapter",
    "MySQLAdapter",
    "PostgreSQLAdapter",
    "SQLiteAdapter",
    "create_adapter",
]

ADAPTERS: dict[Dialect, type[BaseAdapter]] = {
    Dialect.POSTGRES: PostgreSQLAdapter,
    Dialect.MYSQL: MySQLAdapter,
    Dialect.MSSQL: MSSQLAdapter,
    Dialect.SQLITE: SQLiteAdapter,
}


def create_adapter(
    descriptor: ConnectionDescriptor,
    dialect: Dialect,
    timeout: float = 30.0,
    read_only: bool = False,
) -> BaseAdapter:
    """Factory function to create the adapter for a classified dialect.

    The adapter is returned unconnected.

    Args:
        descriptor: Connection descriptor
        dialect: Result of classify_driver(descriptor.driver)
        timeout: Connect/statement timeout in seconds
        read_only: Enforce session-level read-only mode where supported

    Returns:
        Appropriate database adapter instance

    Raises:
        UnsupportedDriverError: If the dialect has no native adapter
    """
    adapter_class = ADAPTERS.get(dialect)
    if adapter_class is None:
        raise UnsupportedDriverError(descriptor.driver, NATIVE_DRIVERS)
    return adapter_class(descriptor, timeout=timeout, read_only=read_only)
