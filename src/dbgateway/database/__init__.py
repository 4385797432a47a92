"""Database engine of dbgateway.

Architecture:
- dialects.py: driver string classification
- adapters/: one DB-API adapter per dialect (PostgreSQL, MySQL, SQL Server, SQLite)
  plus the CLI fallback for everything else
- connection.py: bounded adapter pools and the pool registry
- router.py: ad hoc / pooled / fallback execution and row limits
- transactions.py: dedicated-connection transactions and the stale sweep
- validation.py: statement safety checks and identifier sanitization
- schema_diff.py: introspection queries, schema comparison, migration scripts
- explain.py: EXPLAIN builders and plan normalization
- logging.py: structured event logging and credential redaction
- formatting.py: plain-text rendering for tool output
"""

from dbgateway.database.connection import ConnectionPool, ConnectionPoolManager
from dbgateway.database.dialects import Dialect, classify_driver
from dbgateway.database.logging import redact_secrets
from dbgateway.database.router import QueryRouter, apply_row_limit
from dbgateway.database.transactions import TransactionManager
from dbgateway.database.validation import (
    enforce_read_only,
    sanitize_connection_id,
    sanitize_identifier,
    validate_query,
)

__all__ = [
    "ConnectionPool",
    "ConnectionPoolManager",
    "Dialect",
    "QueryRouter",
    "TransactionManager",
    "apply_row_limit",
    "classify_driver",
    "enforce_read_only",
    "redact_secrets",
    "sanitize_connection_id",
    "sanitize_identifier",
    "validate_query",
]
