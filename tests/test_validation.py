"""Tests for statement safety checks and identifier sanitization."""

from __future__ import annotations

import pytest

from dbgateway.database.validation import (
    enforce_read_only,
    sanitize_connection_id,
    sanitize_identifier,
    validate_query,
)
from dbgateway.errors import ValidationError


@pytest.mark.parametrize(
    "query",
    [
        "UPDATE t SET c=1 WHERE id=1",
        "DELETE FROM t WHERE id=1",
        "update t\n   set c = 1\n where id = 1",
        "SELECT * FROM users",
        "INSERT INTO t (a) VALUES (1)",
        "DROP TABLE old_stuff",
        "CREATE TABLE t (id int)",
    ],
)
def test_validate_query_accepts_safe_statements(query: str) -> None:
    assert validate_query(query) is None


@pytest.mark.parametrize(
    "query",
    [
        "UPDATE t SET c=1",
        "DELETE FROM t",
        "  delete from t;  ",
        "DROP DATABASE prod",
        "drop schema public cascade",
        "TRUNCATE TABLE users",
        "GRANT ALL ON t TO bob",
        "REVOKE SELECT ON t FROM bob",
        "CREATE USER mallory",
        "ALTER ROLE admin WITH SUPERUSER",
        "DROP LOGIN sa",
        "SHUTDOWN",
    ],
)
def test_validate_query_rejects_dangerous_statements(query: str) -> None:
    reason = validate_query(query)

    assert reason is not None
    assert reason.startswith("Query rejected")


def test_validate_query_rejects_empty_text() -> None:
    assert validate_query("") == "Query cannot be empty"
    assert validate_query("   ") == "Query cannot be empty"


def test_validate_query_checks_every_statement() -> None:
    assert validate_query("SELECT 1; DELETE FROM t") is not None
    assert validate_query("SELECT 1; DELETE FROM t WHERE id = 2") is None


def test_where_in_other_statement_does_not_guard_delete() -> None:
    assert validate_query("DELETE FROM t; SELECT * FROM t WHERE id = 1") is not None


@pytest.mark.parametrize(
    "query",
    [
        "SELECT 1",
        "  select * from t",
        "WITH x AS (SELECT 1) SELECT * FROM x",
        "EXPLAIN SELECT 1",
        "SHOW TABLES",
        "DESCRIBE users",
        "desc users",
        "PRAGMA table_info(users)",
        "SET search_path TO app",
        "set SEARCH_PATH = public",
    ],
)
def test_enforce_read_only_accepts_reads(query: str) -> None:
    assert enforce_read_only(query) is None


@pytest.mark.parametrize(
    "query",
    [
        "INSERT INTO t VALUES (1)",
        "UPDATE t SET c=1 WHERE id=1",
        "DELETE FROM t WHERE id=1",
        "SET ROLE admin",
        "CREATE TABLE t (id int)",
        "",
    ],
)
def test_enforce_read_only_rejects_everything_else(query: str) -> None:
    reason = enforce_read_only(query)

    assert reason is not None
    assert "read-only" in reason


def test_read_only_check_is_independent_of_validation() -> None:
    query = "UPDATE t SET c=1 WHERE id=1"

    assert validate_query(query) is None
    assert enforce_read_only(query) is not None


@pytest.mark.parametrize("name", ["users", "_tmp", "Order_Items2", "a" * 128])
def test_sanitize_identifier_accepts_plain_names(name: str) -> None:
    assert sanitize_identifier(name) == name


@pytest.mark.parametrize(
    "name",
    ["", "1users", "users; DROP TABLE x", "us-ers", "users'--", "a" * 129, "schema.table"],
)
def test_sanitize_identifier_rejects_injection(name: str) -> None:
    with pytest.raises(ValidationError):
        sanitize_identifier(name)


def test_sanitize_connection_id_strips_disallowed_characters() -> None:
    assert sanitize_connection_id("postgres-jdbc-1.2_x") == "postgres-jdbc-1.2_x"
    assert sanitize_connection_id("db1'; --") == "db1--"


def test_sanitize_connection_id_rejects_empty_result() -> None:
    with pytest.raises(ValidationError):
        sanitize_connection_id("';!")
