"""Driver string classification into a closed set of dialects."""

from enum import Enum


class Dialect(str, Enum):
    """Dialects the gateway knows how to speak."""

    POSTGRES = "postgresql"
    MYSQL = "mysql"
    MSSQL = "mssql"
    SQLITE = "sqlite"
    UNKNOWN = "unknown"

    @property
    def is_native(self) -> bool:
        return self is not Dialect.UNKNOWN

    @property
    def is_pooled(self) -> bool:
        return self in POOLED_DIALECTS

    @property
    def uses_top(self) -> bool:
        """Whether row limits are expressed as ``SELECT TOP n``."""
        return self is Dialect.MSSQL


POOLED_DIALECTS = frozenset({Dialect.POSTGRES, Dialect.MYSQL, Dialect.MSSQL})

# Display names for error messages, in routing order
NATIVE_DRIVERS = ["postgresql", "mysql/mariadb", "mssql/sqlserver", "sqlite"]
POOLED_DRIVERS = ["postgresql", "mysql/mariadb", "mssql/sqlserver"]

# Substring markers, checked in order against the lowercased driver
_MARKERS = (
    (Dialect.POSTGRES, ("postgres",)),
    (Dialect.MYSQL, ("mysql", "mariadb")),
    (Dialect.MSSQL, ("mssql", "sqlserver", "microsoft")),
    (Dialect.SQLITE, ("sqlite",)),
)


def classify_driver(driver: str) -> Dialect:
    """Classify a driver string (case-insensitive substring match).

    Args:
        driver: Driver identifier from the connection descriptor,
                e.g. "postgres-jdbc", "MariaDB", "sqlserver"

    Returns:
        Matching Dialect, or Dialect.UNKNOWN
    """
    lowered = (driver or "").lower()
    for dialect, markers in _MARKERS:
        if any(marker in lowered for marker in markers):
            return dialect
    return Dialect.UNKNOWN
