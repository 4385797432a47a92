"""Shared fixtures: a scriptable fake DB-API backend and SQLite gateways."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Optional

import pytest

from dbgateway.config import GatewayConfig
from dbgateway.database.adapters import BaseAdapter, SQLiteAdapter
from dbgateway.database.dialects import Dialect
from dbgateway.gateway import Gateway
from dbgateway.models import ConnectionDescriptor


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeDriverError(Exception):
    """Stands in for a native driver's error class."""


class FakeDisconnectError(FakeDriverError):
    """Driver error raised when the server connection drops."""


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self._connection = connection
        self.description: Optional[list[tuple[str]]] = None
        self.rowcount = -1
        self._rows: list[tuple[Any, ...]] = []

    def execute(self, query: str) -> None:
        backend = self._connection.backend
        self._connection.executed.append(query)
        if backend.disconnect_on and backend.disconnect_on in query:
            self._connection.alive = False
            raise FakeDisconnectError("server closed the connection unexpectedly")
        if backend.fail_on and backend.fail_on in query:
            raise FakeDriverError(f"server rejected statement: {query}")
        if query.lstrip().upper().startswith("SELECT"):
            self.description = [("value",)]
            self._rows = [(1,)]
        else:
            self.rowcount = 1

    def fetchall(self) -> list[tuple[Any, ...]]:
        return self._rows

    def close(self) -> None:
        return None


class FakeConnection:
    def __init__(self, backend: "FakeBackend") -> None:
        self.backend = backend
        self.executed: list[str] = []
        self.closed = False
        self.alive = True

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        if self.backend.fail_close:
            raise FakeDriverError("socket already gone")
        self.closed = True


class FakeAdapter(BaseAdapter):
    def __init__(self, descriptor: ConnectionDescriptor, dialect: Dialect, backend: "FakeBackend") -> None:
        super().__init__(descriptor, timeout=5.0)
        self.dialect = dialect
        self.backend = backend

    def _open(self) -> FakeConnection:
        self.backend.connects += 1
        if self.backend.connect_delay:
            time.sleep(self.backend.connect_delay)
        if self.backend.fail_connect:
            raise FakeDriverError(f"password authentication failed for {self.descriptor.password}")
        connection = FakeConnection(self.backend)
        self.backend.connections.append(connection)
        return connection

    def _driver_errors(self) -> tuple[type[BaseException], ...]:
        return (FakeDriverError,)

    def _is_alive(self, connection: FakeConnection) -> bool:
        return connection.alive

    def _is_disconnect(self, error: BaseException) -> bool:
        return isinstance(error, FakeDisconnectError)


class FakeBackend:
    """Adapter factory whose behaviour tests can script."""

    def __init__(self) -> None:
        self.adapters: list[FakeAdapter] = []
        self.connections: list[FakeConnection] = []
        self.connects = 0
        self.connect_delay = 0.0
        self.fail_on: Optional[str] = None
        self.disconnect_on: Optional[str] = None
        self.fail_close = False
        self.fail_connect = False

    def __call__(self, descriptor: ConnectionDescriptor, dialect: Dialect) -> FakeAdapter:
        adapter = FakeAdapter(descriptor, dialect, self)
        self.adapters.append(adapter)
        return adapter

    def statements(self) -> list[str]:
        return [query for connection in self.connections for query in connection.executed]


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def postgres_descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(
        id="db1",
        name="Primary",
        driver="postgresql",
        host="db.internal",
        port=5432,
        database="app",
        user="app",
        properties={"password": "s3cr3t-pw"},
    )


@pytest.fixture
def small_pool_config() -> GatewayConfig:
    return GatewayConfig(pool_min=1, pool_max=2, query_timeout=5.0, pool_acquire_timeout_ms=200)


def sqlite_backed_factory(descriptor: ConnectionDescriptor, dialect: Dialect) -> SQLiteAdapter:
    """Real SQLite connections behind any descriptor, so pooled paths run end to end."""
    return SQLiteAdapter(descriptor, timeout=5.0)


@pytest.fixture
def sqlite_gateway(tmp_path: Path, small_pool_config: GatewayConfig) -> Gateway:
    descriptor = ConnectionDescriptor(
        id="db1",
        name="Scenario",
        driver="postgresql",
        database=str(tmp_path / "db1.sqlite"),
    )
    return Gateway(small_pool_config, {"db1": descriptor}, adapter_factory=sqlite_backed_factory)
