"""Tests for the Gateway facade: lifecycle, safety checks and schema tools."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from dbgateway.config import GatewayConfig
from dbgateway.errors import NotFoundError, ValidationError
from dbgateway.gateway import Gateway
from dbgateway.models import ConnectionDescriptor


@pytest.fixture
def lite_descriptor(tmp_path: Path) -> ConnectionDescriptor:
    return ConnectionDescriptor(id="lite", name="Lite", driver="sqlite", database=str(tmp_path / "app.db"))


@pytest.fixture
def lite_gateway(lite_descriptor: ConnectionDescriptor) -> Gateway:
    return Gateway(connections={"lite": lite_descriptor})


async def _seed(gateway: Gateway) -> None:
    await gateway.execute("lite", "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT NOT NULL, age INTEGER)")
    await gateway.execute("lite", "CREATE UNIQUE INDEX users_email_idx ON users (email)")
    await gateway.execute("lite", "INSERT INTO users (email, age) VALUES ('a@x', 30), ('b@x', 40)")


@pytest.mark.anyio
async def test_shutdown_runs_every_step_in_order(
    fake_backend, postgres_descriptor, small_pool_config, monkeypatch: pytest.MonkeyPatch
) -> None:
    gateway = Gateway(small_pool_config, {"db1": postgres_descriptor}, adapter_factory=fake_backend)
    calls: list[str] = []

    async def failing_rollback_all() -> int:
        calls.append("rollback_all")
        raise RuntimeError("registry corrupted")

    original_close_all = gateway.pools.close_all_pools

    async def spy_close_all() -> None:
        calls.append("close_all_pools")
        await original_close_all()

    monkeypatch.setattr(gateway.transactions, "rollback_all", failing_rollback_all)
    monkeypatch.setattr(gateway.pools, "close_all_pools", spy_close_all)

    await gateway.start()
    task = gateway._cleanup_task
    await gateway.get_pool("db1")
    await gateway.shutdown()

    assert calls == ["rollback_all", "close_all_pools"]
    assert task.cancelled()
    assert gateway.pools.pool_ids == []
    assert fake_backend.connections[0].closed


@pytest.mark.anyio
async def test_shutdown_rolls_back_open_transactions(fake_backend, postgres_descriptor, small_pool_config) -> None:
    async with Gateway(small_pool_config, {"db1": postgres_descriptor}, adapter_factory=fake_backend) as gateway:
        started = await gateway.begin_transaction("db1")

    assert gateway.transactions.get_transaction(started.transaction_id) is None
    assert fake_backend.statements() == ["BEGIN", "ROLLBACK"]


@pytest.mark.anyio
async def test_start_is_idempotent(lite_gateway: Gateway) -> None:
    await lite_gateway.start()
    task = lite_gateway._cleanup_task
    await lite_gateway.start()

    assert lite_gateway._cleanup_task is task
    assert not task.done()
    await lite_gateway.shutdown()
    assert lite_gateway._cleanup_task is None


@pytest.mark.anyio
async def test_cleanup_loop_sweeps_stale_transactions(fake_backend, postgres_descriptor) -> None:
    config = GatewayConfig(pool_min=1, pool_max=2, cleanup_interval=0.01, stale_transaction_ms=0)
    gateway = Gateway(config, {"db1": postgres_descriptor}, adapter_factory=fake_backend)
    started = await gateway.begin_transaction("db1")

    await gateway.start()
    for _ in range(100):
        if gateway.transactions.get_transaction(started.transaction_id) is None:
            break
        await asyncio.sleep(0.01)

    assert gateway.transactions.get_transaction(started.transaction_id) is None
    await gateway.shutdown()


@pytest.mark.anyio
async def test_unknown_connection(lite_gateway: Gateway) -> None:
    with pytest.raises(NotFoundError, match="Connection not found: missing"):
        await lite_gateway.execute("missing", "SELECT 1")


@pytest.mark.anyio
async def test_dangerous_statements_never_reach_the_backend(fake_backend, postgres_descriptor) -> None:
    gateway = Gateway(connections={"db1": postgres_descriptor}, adapter_factory=fake_backend)

    with pytest.raises(ValidationError, match="TRUNCATE"):
        await gateway.execute("db1", "TRUNCATE TABLE users")
    with pytest.raises(ValidationError, match="read-only"):
        await gateway.execute("db1", "DELETE FROM users WHERE id = 1", read_only=True)

    assert fake_backend.connects == 0


@pytest.mark.anyio
async def test_read_only_path_checks_every_statement_of_a_batch(fake_backend, postgres_descriptor) -> None:
    gateway = Gateway(connections={"db1": postgres_descriptor}, adapter_factory=fake_backend)

    with pytest.raises(ValidationError, match="DROP is not allowed in read-only mode"):
        await gateway.execute("db1", "SELECT 1; DROP TABLE users", read_only=True)
    with pytest.raises(ValidationError, match="read-only"):
        await gateway.execute("db1", "SELECT 1; DROP TABLE users; SELECT 1 LIMIT 1", read_only=True)

    assert fake_backend.connects == 0
    assert not any("DROP" in statement for statement in fake_backend.statements())


@pytest.mark.anyio
async def test_read_only_connection_rejects_stacked_writes(fake_backend, postgres_descriptor) -> None:
    postgres_descriptor.readonly = True
    gateway = Gateway(connections={"db1": postgres_descriptor}, adapter_factory=fake_backend)

    with pytest.raises(ValidationError):
        await gateway.execute("db1", "SELECT * FROM t; UPDATE t SET a = 1 WHERE id = 2")
    result = await gateway.execute("db1", "SELECT 1; SELECT 2")

    assert result.row_count == 1
    assert fake_backend.statements() == ["SELECT 1; SELECT 2"]
    await gateway.shutdown()
    assert fake_backend.connects == 0


@pytest.mark.anyio
async def test_read_only_connection_rejects_writes(fake_backend, postgres_descriptor) -> None:
    postgres_descriptor.readonly = True
    gateway = Gateway(connections={"db1": postgres_descriptor}, adapter_factory=fake_backend)

    with pytest.raises(ValidationError):
        await gateway.write("db1", "INSERT INTO t VALUES (1)")
    result = await gateway.execute("db1", "SELECT 1")

    assert result.rows == [[1]]
    await gateway.shutdown()


@pytest.mark.anyio
async def test_read_only_gateway_rejects_transaction_writes(fake_backend, postgres_descriptor) -> None:
    config = GatewayConfig(pool_min=1, pool_max=2, read_only=True)
    gateway = Gateway(config, {"db1": postgres_descriptor}, adapter_factory=fake_backend)
    started = await gateway.begin_transaction("db1")

    with pytest.raises(ValidationError):
        await gateway.execute_in_transaction(started.transaction_id, "UPDATE t SET a = 1 WHERE id = 2")

    assert "UPDATE t SET a = 1 WHERE id = 2" not in fake_backend.statements()
    await gateway.shutdown()


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("query", "message"),
    [
        ("SELECT * FROM users", "Use execute_query for SELECT operations"),
        ("CREATE TABLE t (id int)", "Only INSERT, UPDATE, or DELETE"),
        ("DELETE FROM users", "without a WHERE clause"),
        ("INSERT INTO users (email) VALUES ('x'); DROP TABLE users", "Only INSERT, UPDATE, or DELETE"),
    ],
)
async def test_write_rejections(lite_gateway: Gateway, query: str, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        await lite_gateway.write("lite", query)


@pytest.mark.anyio
async def test_write_and_read_round_trip(lite_gateway: Gateway) -> None:
    await _seed(lite_gateway)

    updated = await lite_gateway.write("lite", "UPDATE users SET age = age + 1 WHERE email = 'a@x'")
    result = await lite_gateway.execute("lite", "SELECT email, age FROM users ORDER BY email", max_rows=1)

    assert updated.row_count == 1
    assert result.rows == [["a@x", 31]]


@pytest.mark.anyio
async def test_list_tables_and_table_schema(lite_gateway: Gateway) -> None:
    await _seed(lite_gateway)
    await lite_gateway.execute("lite", "CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER)")

    tables = await lite_gateway.list_tables("lite")
    users = await lite_gateway.get_table_schema("lite", "users")

    assert tables == ["orders", "users"]
    assert list(users.columns) == ["id", "email", "age"]
    assert users.columns["email"].nullable is False
    assert users.columns["age"].nullable is True
    assert users.indexes["users_email_idx"].columns == ["email"]
    assert users.indexes["users_email_idx"].unique is True


@pytest.mark.anyio
async def test_missing_table(lite_gateway: Gateway) -> None:
    with pytest.raises(NotFoundError, match="Table not found: ghosts"):
        await lite_gateway.get_table_schema("lite", "ghosts")


@pytest.mark.anyio
async def test_drop_table(lite_gateway: Gateway) -> None:
    await _seed(lite_gateway)

    with pytest.raises(ValidationError):
        await lite_gateway.drop_table("lite", "users; DROP TABLE orders")
    with pytest.raises(NotFoundError):
        await lite_gateway.drop_table("lite", "ghosts")
    await lite_gateway.drop_table("lite", "users")

    assert await lite_gateway.list_tables("lite") == []


@pytest.mark.anyio
async def test_create_and_alter_table(lite_gateway: Gateway) -> None:
    await lite_gateway.create_table("lite", "CREATE TABLE invoices (id INTEGER PRIMARY KEY)")
    await lite_gateway.alter_table("lite", "ALTER  TABLE invoices ADD COLUMN total REAL")

    invoices = await lite_gateway.get_table_schema("lite", "invoices")

    assert list(invoices.columns) == ["id", "total"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("operation", "query", "message"),
    [
        ("create_table", "DROP TABLE users", "Only CREATE TABLE statements are allowed"),
        ("create_table", "CREATE INDEX idx ON users (email)", "Only CREATE TABLE"),
        ("create_table", "CREATE TABLE a (id INTEGER); DROP TABLE users", "Only CREATE TABLE"),
        ("alter_table", "CREATE TABLE t (id INTEGER)", "Only ALTER TABLE statements are allowed"),
        ("alter_table", "ALTER TABLE users ADD COLUMN x INTEGER; DELETE FROM users", "Only ALTER TABLE"),
    ],
)
async def test_ddl_rejections(lite_gateway: Gateway, operation: str, query: str, message: str) -> None:
    await _seed(lite_gateway)

    with pytest.raises(ValidationError, match=message):
        await getattr(lite_gateway, operation)("lite", query)

    assert await lite_gateway.list_tables("lite") == ["users"]


@pytest.mark.anyio
async def test_ddl_is_rejected_on_read_only_connections(fake_backend, postgres_descriptor) -> None:
    postgres_descriptor.readonly = True
    gateway = Gateway(connections={"db1": postgres_descriptor}, adapter_factory=fake_backend)

    with pytest.raises(ValidationError, match="read-only"):
        await gateway.create_table("db1", "CREATE TABLE t (id int)")
    with pytest.raises(ValidationError, match="read-only"):
        await gateway.alter_table("db1", "ALTER TABLE t ADD COLUMN c int")

    assert fake_backend.connects == 0


@pytest.mark.anyio
async def test_database_stats(lite_gateway: Gateway) -> None:
    await _seed(lite_gateway)
    await lite_gateway.execute("lite", "CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER)")

    stats = await lite_gateway.get_database_stats("lite")

    assert stats.connection_id == "lite"
    assert stats.table_count == 2
    assert stats.server_version
    assert stats.size_bytes > 0
    assert stats.total_size.endswith("KB")
    assert stats.uptime_seconds is None
    assert stats.connection_time >= 0


@pytest.mark.anyio
async def test_database_stats_tolerates_missing_catalog_privileges(
    fake_backend, postgres_descriptor, small_pool_config
) -> None:
    fake_backend.fail_on = "pg_postmaster_start_time"
    gateway = Gateway(small_pool_config, {"db1": postgres_descriptor}, adapter_factory=fake_backend)

    stats = await gateway.get_database_stats("db1")

    assert stats.server_version == "1"
    assert stats.size_bytes == 1
    assert stats.total_size == "1 B"
    assert stats.uptime_seconds is None
    await gateway.shutdown()


@pytest.mark.anyio
async def test_compare_schemas_between_connections(tmp_path: Path) -> None:
    source = ConnectionDescriptor(id="src", name="Source", driver="sqlite", database=str(tmp_path / "src.db"))
    target = ConnectionDescriptor(id="dst", name="Target", driver="sqlite", database=str(tmp_path / "dst.db"))
    gateway = Gateway(connections={"src": source, "dst": target})
    await gateway.execute("src", "CREATE TABLE users (id INTEGER, email VARCHAR(100))")
    await gateway.execute("src", "CREATE TABLE legacy (id INTEGER)")
    await gateway.execute("dst", "CREATE TABLE users (id INTEGER, email TEXT, created_at TIMESTAMP)")

    diff = await gateway.compare_schemas("src", "dst")

    statuses = {d.table_name: d.status for d in diff.differences}
    assert statuses == {"users": "modified", "legacy": "removed"}
    assert diff.source_connection == "src"
    assert diff.summary.total_differences == 2


@pytest.mark.anyio
async def test_compare_schemas_with_tables_missing_on_one_side(tmp_path: Path) -> None:
    source = ConnectionDescriptor(id="src", name="Source", driver="sqlite", database=str(tmp_path / "src.db"))
    target = ConnectionDescriptor(id="dst", name="Target", driver="sqlite", database=str(tmp_path / "dst.db"))
    gateway = Gateway(connections={"src": source, "dst": target})
    await gateway.execute("src", "CREATE TABLE users (id INTEGER)")
    await gateway.execute("src", "CREATE TABLE legacy (id INTEGER)")
    await gateway.execute("dst", "CREATE TABLE users (id INTEGER)")
    await gateway.execute("dst", "CREATE TABLE audit (id INTEGER)")

    diff = await gateway.compare_schemas("src", "dst", tables=["users", "legacy", "audit"])

    statuses = {d.table_name: d.status for d in diff.differences}
    assert statuses == {"users": "unchanged", "legacy": "removed", "audit": "added"}
    assert diff.summary.total_differences == 2


@pytest.mark.anyio
async def test_test_connection_reports_success_and_failure(tmp_path: Path, lite_gateway: Gateway) -> None:
    broken = ConnectionDescriptor(
        id="broken", name="Broken", driver="sqlite", database=str(tmp_path / "missing" / "dir" / "x.db")
    )
    lite_gateway.register_connection(broken)

    ok = await lite_gateway.test_connection("lite")
    failed = await lite_gateway.test_connection("broken")

    assert ok["success"] is True
    assert ok["dialect"] == "sqlite"
    assert ok["version"]
    assert ok["response_time_ms"] >= 0
    assert failed["success"] is False
    assert "error" in failed


def test_connection_listing_is_redacted(postgres_descriptor) -> None:
    gateway = Gateway(connections={"db1": postgres_descriptor})

    listed = gateway.list_connections()
    info = gateway.get_connection_info("db1")

    assert "s3cr3t-pw" not in repr(listed)
    assert "s3cr3t-pw" not in repr(info)
    assert info["dialect"] == "postgresql"
    assert info["pool"] is None
