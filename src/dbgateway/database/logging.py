"""Structured logging and credential redaction for database operations."""

import copy
import hashlib
import json
import logging
import re
import time
from dataclasses import asdict, is_dataclass
from typing import Any, Optional

from ..constants import REDACTED, SECRET_KEYS

# Configure logger for database operations
db_logger = logging.getLogger("dbgateway.database")

_DSN_USERINFO = re.compile(r'://([^:/@]+):([^@]*)@')
_QUERY_SECRET = re.compile(
    r'((?:password|passwd|pwd|secret|token)=)([^&;\s]+)', re.IGNORECASE
)


def sanitize_dsn(dsn: str) -> str:
    """Sanitize DSN by masking the password in its userinfo and query string.

    Args:
        dsn: Database connection string or URL

    Returns:
        DSN with credentials masked
    """
    masked = _DSN_USERINFO.sub(rf'://\1:{REDACTED}@', dsn)
    return _QUERY_SECRET.sub(rf'\g<1>{REDACTED}', masked)


def _is_secret_key(key: str) -> bool:
    lowered = key.lower().replace("-", "_")
    return any(marker in lowered for marker in SECRET_KEYS)


def _collect_secrets(value: Any, found: set[str]) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if isinstance(key, str) and _is_secret_key(key) and isinstance(item, str) and item:
                found.add(item)
            else:
                _collect_secrets(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_secrets(item, found)


def _scrub(value: Any, secrets: set[str]) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and _is_secret_key(key) and item not in (None, "")
            else _scrub(item, secrets)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_scrub(item, secrets) for item in value]
    if isinstance(value, str):
        scrubbed = sanitize_dsn(value)
        # Longest first so a secret containing another is masked whole
        for secret in sorted(secrets, key=len, reverse=True):
            scrubbed = scrubbed.replace(secret, REDACTED)
        return scrubbed
    return value


def redact_secrets(obj: Any) -> Any:
    """Return a redacted deep copy of a connection or tool-argument object.

    Password/secret-shaped keys are replaced with a fixed marker, URL
    credentials are masked, and any removed secret value appearing inside
    another string is masked as well. The input is never mutated.

    Args:
        obj: Mapping, list, dataclass (e.g. ConnectionDescriptor) or scalar

    Returns:
        Plain dict/list/scalar structure safe to log or return to a caller
    """
    if is_dataclass(obj) and not isinstance(obj, type):
        obj = asdict(obj)
    else:
        obj = copy.deepcopy(obj)

    secrets: set[str] = set()
    _collect_secrets(obj, secrets)
    return _scrub(obj, secrets)


def hash_query(query: str) -> str:
    """Generate hash of query for logging (deduplication).

    Args:
        query: SQL query

    Returns:
        SHA256 hash of query (first 16 characters)
    """
    return hashlib.sha256(query.encode()).hexdigest()[:16]


def log_connection(dsn: str, success: bool, error: Optional[str] = None, duration: float = 0.0) -> None:
    """Log database connection attempt.

    Args:
        dsn: Connection target (will be sanitized)
        success: Whether connection succeeded
        error: Error message if failed
        duration: Connection time in seconds
    """
    log_data = {
        "event": "database_connection",
        "dsn": sanitize_dsn(dsn),
        "success": success,
        "duration_seconds": round(duration, 3),
    }

    if error:
        log_data["error"] = error

    if success:
        db_logger.info(json.dumps(log_data))
    else:
        db_logger.error(json.dumps(log_data))


def log_query_execution(
    query: str,
    dsn: str,
    success: bool,
    row_count: int = 0,
    duration: float = 0.0,
    error: Optional[str] = None,
    blocked: bool = False
) -> None:
    """Log query execution with metadata.

    Security audit: blocked statements are logged at WARNING level with the
    query hash for monitoring.

    Args:
        query: SQL query (hashed, preview truncated)
        dsn: Connection target (will be sanitized)
        success: Whether query executed successfully
        row_count: Number of rows returned or affected
        duration: Query execution time in seconds
        error: Error message if failed
        blocked: Whether the safety engine rejected the query
    """
    log_data = {
        "event": "query_execution",
        "query_hash": hash_query(query),
        "query_preview": query[:100] + ("..." if len(query) > 100 else ""),
        "dsn": sanitize_dsn(dsn),
        "success": success,
        "blocked": blocked,
        "row_count": row_count,
        "duration_seconds": round(duration, 3),
        "timestamp": time.time(),
    }

    if error:
        log_data["error"] = error

    if blocked:
        db_logger.warning(json.dumps(log_data))
    elif success:
        db_logger.info(json.dumps(log_data))
    else:
        db_logger.error(json.dumps(log_data))


def log_pool_operation(connection_id: str, operation: str, pool_size: int, active_connections: int) -> None:
    """Log connection pool operations.

    Args:
        connection_id: Pool key
        operation: Operation type (create, acquire, release, close)
        pool_size: Maximum pool size
        active_connections: Current number of checked-out connections
    """
    log_data = {
        "event": "connection_pool",
        "connection_id": connection_id,
        "operation": operation,
        "pool_size": pool_size,
        "active_connections": active_connections,
    }

    db_logger.debug(json.dumps(log_data))


def log_resource_leak(
    driver: str,
    host: Optional[str],
    database: Optional[str],
    error: str,
    operation: str = "close",
) -> None:
    """Log a failed close/release; the connection may have leaked."""
    log_data = {
        "event": "resource_leak",
        "operation": operation,
        "driver": driver,
        "host": host,
        "database": database,
        "error": error,
    }

    db_logger.error(json.dumps(log_data))


def log_transaction(transaction_id: str, connection_id: str, operation: str, success: bool = True,
                    error: Optional[str] = None) -> None:
    """Log a transaction state transition."""
    log_data = {
        "event": "transaction",
        "transaction_id": transaction_id,
        "connection_id": connection_id,
        "operation": operation,
        "success": success,
    }

    if error:
        log_data["error"] = error

    if success:
        db_logger.info(json.dumps(log_data))
    else:
        db_logger.error(json.dumps(log_data))


class QueryTimer:
    """Context manager for timing query execution."""

    def __init__(self):
        self.start_time: float = 0.0
        self.duration: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time

    @property
    def duration_ms(self) -> float:
        return round(self.duration * 1000, 3)
