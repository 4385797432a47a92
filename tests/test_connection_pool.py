"""Tests for the adapter pool and the per-connection pool registry."""

from __future__ import annotations

import asyncio
import time
from functools import partial
from types import SimpleNamespace

import psycopg2
import psycopg2.errors
import pymysql
import pytest

from dbgateway.database import connection as connection_module
from dbgateway.database.adapters import MySQLAdapter, PostgreSQLAdapter
from dbgateway.database.connection import ConnectionPool, ConnectionPoolManager, normalize_pool_stats
from dbgateway.database.dialects import Dialect
from dbgateway.errors import BackendError, GatewayTimeoutError, ResourceError
from dbgateway.models import ConnectionDescriptor, PoolConfig


def _pool(backend, descriptor, **overrides) -> ConnectionPool:
    settings = {"min": 1, "max": 2, "idle_timeout_ms": 30_000, "acquire_timeout_ms": 100}
    settings.update(overrides)
    return ConnectionPool(
        descriptor.id,
        Dialect.POSTGRES,
        partial(backend, descriptor, Dialect.POSTGRES),
        PoolConfig(**settings),
    )


def test_open_pre_connects_minimum(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor, min=2, max=4)

    pool.open()

    assert fake_backend.connects == 2
    assert pool.stats() == {"total": 2, "idle": 2, "active": 0, "waiting": 0}


def test_acquire_reuses_idle_adapters(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor)
    pool.open()

    first = pool.acquire()
    pool.release(first)
    second = pool.acquire()

    assert second is first
    assert fake_backend.connects == 1


def test_pool_never_exceeds_max(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor)
    pool.open()
    held = [pool.acquire(), pool.acquire()]

    started = time.monotonic()
    with pytest.raises(GatewayTimeoutError, match="Connection pool exhausted for db1"):
        pool.acquire(timeout=0.05)

    assert time.monotonic() - started >= 0.04
    assert pool.stats()["total"] == 2
    assert pool.stats()["waiting"] == 0
    for adapter in held:
        pool.release(adapter)


def test_discarded_adapter_frees_its_slot(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor, max=1)
    pool.open()

    adapter = pool.acquire()
    pool.release(adapter, discard=True)
    replacement = pool.acquire()

    assert replacement is not adapter
    assert fake_backend.connections[0].closed
    assert fake_backend.connects == 2


def test_idle_adapters_above_minimum_expire(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor, idle_timeout_ms=1)
    pool.open()
    first, second = pool.acquire(), pool.acquire()
    pool.release(first)
    pool.release(second)

    time.sleep(0.02)
    survivor = pool.acquire()

    assert survivor is second
    assert fake_backend.connections[0].closed
    assert pool.stats()["total"] == 1


def test_failed_connect_releases_the_slot(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor, min=0, max=1)
    fake_backend.fail_connect = True

    with pytest.raises(BackendError):
        pool.acquire()

    fake_backend.fail_connect = False
    assert pool.acquire().is_connected


def test_close_reports_failed_closes(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor, min=2)
    pool.open()
    fake_backend.fail_close = True

    with pytest.raises(ResourceError, match="2 connection"):
        pool.close()

    assert pool.closed
    assert pool.stats()["total"] == 0
    with pytest.raises(ResourceError):
        pool.acquire()


def test_adapter_released_after_close_is_destroyed(fake_backend, postgres_descriptor) -> None:
    pool = _pool(fake_backend, postgres_descriptor)
    pool.open()
    adapter = pool.acquire()

    pool.close()
    pool.release(adapter)

    assert not adapter.is_connected
    assert pool.stats()["total"] == 0


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({"total": 5, "idle": 2, "active": 3, "waiting": 1}, (5, 2, 3, 1)),
        ({"idle": 2, "active": 3}, (5, 2, 3, 0)),
        ({"total": 4, "idle": 1}, (4, 1, 3, 0)),
        ({"total": 4, "active": 4}, (4, 0, 4, 0)),
        ({}, (10, 10, 0, 0)),
    ],
)
def test_normalize_pool_stats(raw, expected) -> None:
    config = PoolConfig(min=2, max=10, idle_timeout_ms=30_000, acquire_timeout_ms=100)

    stats = normalize_pool_stats("db1", raw, config)

    assert (
        stats.total_connections,
        stats.idle_connections,
        stats.active_connections,
        stats.waiting_requests,
    ) == expected


POOL_CONFIG = PoolConfig(min=1, max=2, idle_timeout_ms=30_000, acquire_timeout_ms=100)


@pytest.mark.anyio
async def test_concurrent_get_pool_creates_one_pool(
    fake_backend, postgres_descriptor, monkeypatch: pytest.MonkeyPatch
) -> None:
    created: list[ConnectionPool] = []

    class CountingPool(ConnectionPool):
        def __init__(self, *args, **kwargs) -> None:
            super().__init__(*args, **kwargs)
            created.append(self)

    monkeypatch.setattr(connection_module, "ConnectionPool", CountingPool)
    fake_backend.connect_delay = 0.05
    manager = ConnectionPoolManager(POOL_CONFIG, fake_backend, timeout=5.0)

    pools = await asyncio.gather(*(manager.get_pool(postgres_descriptor) for _ in range(10)))

    assert len(created) == 1
    assert all(pool is created[0] for pool in pools)
    assert fake_backend.connects == 1
    assert manager.pool_ids == ["db1"]
    await manager.close_all_pools()


@pytest.mark.anyio
async def test_non_pooled_dialects_get_no_pool(fake_backend, tmp_path) -> None:
    manager = ConnectionPoolManager(POOL_CONFIG, fake_backend)
    descriptor = ConnectionDescriptor(id="lite", name="Lite", driver="sqlite", database=str(tmp_path / "x.db"))

    assert await manager.get_pool(descriptor) is None
    assert not manager.has_pool("lite")
    assert manager.get_stats("lite") is None


@pytest.mark.anyio
async def test_failed_creation_can_be_retried(fake_backend, postgres_descriptor) -> None:
    manager = ConnectionPoolManager(POOL_CONFIG, fake_backend)
    fake_backend.fail_connect = True

    with pytest.raises(BackendError):
        await manager.get_pool(postgres_descriptor)
    assert not manager.has_pool("db1")

    fake_backend.fail_connect = False
    pool = await manager.get_pool(postgres_descriptor)

    assert pool is not None
    assert manager.get_pool_dialect("db1") is Dialect.POSTGRES
    await manager.close_all_pools()


@pytest.mark.anyio
async def test_close_pool_is_idempotent(fake_backend, postgres_descriptor) -> None:
    manager = ConnectionPoolManager(POOL_CONFIG, fake_backend)
    await manager.get_pool(postgres_descriptor)

    await manager.close_pool("db1")
    await manager.close_pool("db1")
    await manager.close_pool("never-created")

    assert not manager.has_pool("db1")
    assert fake_backend.connections[0].closed


@pytest.mark.anyio
async def test_close_all_pools_logs_close_failures(fake_backend, postgres_descriptor) -> None:
    manager = ConnectionPoolManager(POOL_CONFIG, fake_backend)
    other = ConnectionDescriptor(id="db2", name="Replica", driver="mysql", host="replica")
    await manager.get_pool(postgres_descriptor)
    await manager.get_pool(other)
    fake_backend.fail_close = True

    await manager.close_all_pools()

    assert manager.pool_ids == []


@pytest.mark.anyio
async def test_get_stats_tolerates_broken_pools(fake_backend, postgres_descriptor) -> None:
    manager = ConnectionPoolManager(POOL_CONFIG, fake_backend)
    pool = await manager.get_pool(postgres_descriptor)

    def broken_stats() -> dict[str, int]:
        raise RuntimeError("stats unavailable")

    pool.stats = broken_stats
    stats = manager.get_stats("db1")

    assert stats.connection_id == "db1"
    assert stats.total_connections == POOL_CONFIG.max
    assert stats.waiting_requests == 0
    await manager.close_all_pools()


def test_driver_liveness_checks(postgres_descriptor) -> None:
    postgres = PostgreSQLAdapter(postgres_descriptor)
    postgres.connection = SimpleNamespace(closed=0)
    assert postgres.is_connected
    postgres.connection.closed = 2
    assert not postgres.is_connected

    mysql = MySQLAdapter(postgres_descriptor, timeout=5.0)
    mysql.connection = SimpleNamespace(open=False)
    assert not mysql.is_connected


def test_driver_disconnect_classification(postgres_descriptor) -> None:
    postgres = PostgreSQLAdapter(postgres_descriptor)
    mysql = MySQLAdapter(postgres_descriptor, timeout=5.0)

    assert postgres._is_disconnect(psycopg2.OperationalError("server closed the connection unexpectedly"))
    assert not postgres._is_disconnect(psycopg2.errors.QueryCanceled("canceling statement due to statement timeout"))
    assert not postgres._is_disconnect(psycopg2.ProgrammingError("syntax error"))
    assert mysql._is_disconnect(pymysql.err.OperationalError(2006, "MySQL server has gone away"))
    assert not mysql._is_disconnect(pymysql.err.OperationalError(1205, "Lock wait timeout exceeded"))
