"""Runtime tunables and connection descriptor loading."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional

from .constants import (
    CLEANUP_INTERVAL,
    CLI_FALLBACK_TIMEOUT,
    DB_MAX_ROWS,
    DB_POOL_ACQUIRE_TIMEOUT_MS,
    DB_POOL_IDLE_TIMEOUT_MS,
    DB_POOL_MAX,
    DB_POOL_MIN,
    DB_QUERY_TIMEOUT,
    STALE_TRANSACTION_MS,
)
from .errors import ConfigurationError
from .models import ConnectionDescriptor, PoolConfig

ENV_PREFIX = "DBGATEWAY_"
_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class GatewayConfig:
    """Tunables consumed by the gateway. Loading them is the caller's concern."""

    pool_min: int = DB_POOL_MIN
    pool_max: int = DB_POOL_MAX
    pool_idle_timeout_ms: int = DB_POOL_IDLE_TIMEOUT_MS
    pool_acquire_timeout_ms: int = DB_POOL_ACQUIRE_TIMEOUT_MS
    query_timeout: float = DB_QUERY_TIMEOUT
    read_only: bool = False
    max_rows: int = DB_MAX_ROWS
    stale_transaction_ms: int = STALE_TRANSACTION_MS
    cleanup_interval: float = CLEANUP_INTERVAL
    cli_path: Optional[str] = None
    cli_timeout: float = CLI_FALLBACK_TIMEOUT
    debug: bool = False

    def __post_init__(self):
        if self.pool_min < 0 or self.pool_max < 1:
            raise ConfigurationError(
                f"Invalid pool bounds: min={self.pool_min}, max={self.pool_max}\n"
                f"  Hint: min must be >= 0 and max must be >= 1"
            )
        if self.pool_min > self.pool_max:
            raise ConfigurationError(
                f"Pool min ({self.pool_min}) cannot exceed pool max ({self.pool_max})"
            )
        if self.query_timeout <= 0:
            raise ConfigurationError(f"Query timeout must be positive, got {self.query_timeout}")
        if self.cleanup_interval <= 0:
            raise ConfigurationError(
                f"Cleanup interval must be positive, got {self.cleanup_interval}"
            )

    @property
    def pool(self) -> PoolConfig:
        return PoolConfig(
            min=self.pool_min,
            max=self.pool_max,
            idle_timeout_ms=self.pool_idle_timeout_ms,
            acquire_timeout_ms=self.pool_acquire_timeout_ms,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        """Build a config from ``DBGATEWAY_*`` environment variables.

        Unset variables keep their defaults.

        Raises:
            ConfigurationError: If a variable cannot be parsed
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        def read(name: str, field_name: str, parse: Callable[[str], object]) -> None:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw.strip() == "":
                return
            try:
                values[field_name] = parse(raw.strip())
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {ENV_PREFIX}{name}: {raw!r}"
                ) from e

        read("POOL_MIN", "pool_min", int)
        read("POOL_MAX", "pool_max", int)
        read("POOL_IDLE_TIMEOUT_MS", "pool_idle_timeout_ms", int)
        read("POOL_ACQUIRE_TIMEOUT_MS", "pool_acquire_timeout_ms", int)
        read("QUERY_TIMEOUT", "query_timeout", float)
        read("READ_ONLY", "read_only", _parse_bool)
        read("MAX_ROWS", "max_rows", int)
        read("STALE_TRANSACTION_MS", "stale_transaction_ms", int)
        read("CLEANUP_INTERVAL", "cleanup_interval", float)
        read("CLI_PATH", "cli_path", str)
        read("CLI_TIMEOUT", "cli_timeout", float)
        read("DEBUG", "debug", _parse_bool)

        return cls(**values)


def _parse_bool(raw: str) -> bool:
    return raw.lower() in _TRUE_VALUES


def load_connections(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> dict[str, ConnectionDescriptor]:
    """Load connection descriptors from a JSON file or ``DBGATEWAY_CONNECTIONS``.

    The payload is a JSON list of descriptor objects (or an object with a
    ``connections`` list). Returns descriptors keyed by id.

    Raises:
        ConfigurationError: If the payload is unreadable or malformed
    """
    env = os.environ if environ is None else environ
    if path:
        try:
            raw = Path(path).expanduser().read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read connections file {path}: {e}") from e
    else:
        raw = env.get(ENV_PREFIX + "CONNECTIONS", "")
        if not raw.strip():
            return {}

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Connections payload is not valid JSON: {e}") from e

    if isinstance(payload, dict):
        payload = payload.get("connections", [])
    if not isinstance(payload, list):
        raise ConfigurationError("Connections payload must be a JSON list of connection objects")

    connections: dict[str, ConnectionDescriptor] = {}
    for entry in payload:
        if not isinstance(entry, dict) or "id" not in entry:
            raise ConfigurationError("Every connection entry must be an object with an 'id'")
        descriptor = ConnectionDescriptor.from_dict(entry)
        connections[descriptor.id] = descriptor
    return connections
