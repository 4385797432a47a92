"""Constants and static configuration for the dbgateway MCP server."""

# Application constants
SERVER_NAME = "dbgateway"
SERVER_VERSION = "1.0.0"
EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# Pool defaults
DB_POOL_MIN = 2
DB_POOL_MAX = 10
DB_POOL_IDLE_TIMEOUT_MS = 30_000  # idle adapters above min are closed after 30s
DB_POOL_ACQUIRE_TIMEOUT_MS = 10_000  # wait at most 10s for a free adapter

# Query defaults
DB_QUERY_TIMEOUT = 30.0  # seconds, applied to every backend call
DB_MAX_ROWS = 1_000  # row limit injected into SELECT statements

# Transaction housekeeping
STALE_TRANSACTION_MS = 3_600_000  # 1 hour
CLEANUP_INTERVAL = 300.0  # 5 minutes

# Subprocess fallback
CLI_FALLBACK_TIMEOUT = 30.0
CLI_TERMINATE_GRACE = 5.0  # seconds between SIGTERM and SIGKILL

# Default ports per dialect
DEFAULT_PORTS = {
    "postgresql": 5432,
    "mysql": 3306,
    "mssql": 1433,
}

# Redaction
REDACTED = "***"
SECRET_KEYS = (
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "credential",
    "credentials",
    "private_key",
    "access_key",
)

# Identifiers interpolated into introspection queries
MAX_IDENTIFIER_LENGTH = 128
