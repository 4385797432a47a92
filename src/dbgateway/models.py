"""Data model shared by the gateway components."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass
class ConnectionDescriptor:
    """Identity and credential metadata for one database endpoint.

    Externally owned; the gateway never persists it. Secrets live in
    ``properties`` (``password``, ...) and must go through
    ``redact_secrets`` before being logged or returned.
    """

    id: str
    name: str
    driver: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    url: Optional[str] = None
    properties: dict[str, str] = field(default_factory=dict)
    readonly: bool = False
    folder: Optional[str] = None

    @property
    def password(self) -> Optional[str]:
        return self.properties.get("password")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionDescriptor":
        port = data.get("port")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            driver=str(data.get("driver", "")),
            host=data.get("host"),
            port=int(port) if port not in (None, "") else None,
            database=data.get("database"),
            user=data.get("user"),
            url=data.get("url"),
            properties={str(k): str(v) for k, v in (data.get("properties") or {}).items()},
            readonly=bool(data.get("readonly", False)),
            folder=data.get("folder"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PoolConfig:
    min: int
    max: int
    idle_timeout_ms: int
    acquire_timeout_ms: int


@dataclass
class PoolStats:
    connection_id: str
    total_connections: int = 0
    idle_connections: int = 0
    active_connections: int = 0
    waiting_requests: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QueryResult:
    """Canonical output of every execution path regardless of backend."""

    columns: list[str]
    rows: list[list[Any]]
    row_count: int
    execution_time: float = 0.0  # milliseconds
    query: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Transaction:
    id: str
    connection_id: str
    status: str = "active"  # active | committed | rolled_back
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class TransactionResult:
    transaction_id: str
    status: str  # started | committed | rolled_back
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ColumnSchema:
    name: str
    type: str
    nullable: bool = True
    default_value: Optional[str] = None


@dataclass
class IndexSchema:
    name: str
    columns: list[str]
    unique: bool = False


@dataclass
class TableSchema:
    table_name: str
    columns: dict[str, ColumnSchema] = field(default_factory=dict)
    indexes: dict[str, IndexSchema] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "columns": [asdict(column) for column in self.columns.values()],
            "indexes": [asdict(index) for index in self.indexes.values()],
        }


@dataclass
class ColumnDiff:
    column_name: str
    status: str  # added | removed | modified
    source_type: Optional[str] = None
    target_type: Optional[str] = None
    changes: list[str] = field(default_factory=list)


@dataclass
class IndexDiff:
    index_name: str
    status: str  # added | removed | modified
    changes: list[str] = field(default_factory=list)


@dataclass
class TableDiff:
    table_name: str
    status: str  # added | removed | modified | unchanged
    column_diffs: list[ColumnDiff] = field(default_factory=list)
    index_diffs: list[IndexDiff] = field(default_factory=list)


@dataclass
class DiffSummary:
    tables_added: int = 0
    tables_removed: int = 0
    tables_modified: int = 0
    tables_unchanged: int = 0
    total_differences: int = 0


@dataclass
class SchemaDiff:
    source_connection: str
    target_connection: str
    differences: list[TableDiff]
    summary: DiffSummary

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QueryPlanNode:
    operation: str
    object: Optional[str] = None
    cost: Optional[float] = None
    rows: Optional[float] = None
    width: Optional[int] = None
    actual_time: Optional[float] = None
    actual_rows: Optional[float] = None
    details: dict[str, Any] = field(default_factory=dict)
    children: list["QueryPlanNode"] = field(default_factory=list)


@dataclass
class ExplainResult:
    query: str
    plan: list[QueryPlanNode]
    format: str = "text"
    planning_time: Optional[float] = None
    execution_time: Optional[float] = None
    total_cost: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DatabaseStats:
    connection_id: str
    table_count: int
    server_version: Optional[str] = None
    size_bytes: Optional[int] = None
    total_size: Optional[str] = None
    uptime_seconds: Optional[int] = None
    connection_time: float = 0.0  # milliseconds

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
