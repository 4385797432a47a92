"""Schema introspection, comparison and migration script generation."""

import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from ..models import (
    ColumnDiff,
    ColumnSchema,
    DiffSummary,
    IndexDiff,
    IndexSchema,
    SchemaDiff,
    TableDiff,
    TableSchema,
)
from .dialects import Dialect
from .validation import sanitize_identifier

# Synonyms folded to one canonical spelling after qualifiers are stripped
TYPE_SYNONYMS = {
    "int": "integer",
    "int4": "integer",
    "integer": "integer",
    "int8": "bigint",
    "int2": "smallint",
    "bool": "boolean",
    "float4": "real",
    "float8": "double precision",
    "double": "double precision",
    "varchar": "character varying",
    "char": "character",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "decimal": "numeric",
}

_TYPE_QUALIFIER = re.compile(r"\(\s*\d+(?:\s*,\s*\d+)?\s*\)")
_UNSIGNED = re.compile(r"\bunsigned\b")

_TRUE_STRINGS = ("1", "t", "true", "yes", "y")


def normalize_type(raw: Optional[str]) -> str:
    """Canonical type name, so cosmetic spelling differences compare equal.

    >>> normalize_type("INT(11)") == normalize_type("int4") == "integer"
    True
    """
    normalized = _TYPE_QUALIFIER.sub("", (raw or "").lower())
    normalized = _UNSIGNED.sub("", normalized)
    normalized = " ".join(normalized.split())
    return TYPE_SYNONYMS.get(normalized, normalized)


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_STRINGS


def _quote_literal(identifier: str) -> str:
    return f"'{sanitize_identifier(identifier)}'"


# =============================================================================
# Introspection queries
# =============================================================================


def build_list_tables_query(dialect: Dialect, schema: Optional[str] = None, include_views: bool = False) -> str:
    """Query listing user tables (and optionally views) for a dialect.

    Result columns always include ``table_name`` and ``table_type``.

    Raises:
        ValidationError: If ``schema`` is not a plain identifier
    """
    if dialect is Dialect.SQLITE:
        types = "('table', 'view')" if include_views else "('table')"
        return (
            "SELECT name AS table_name, type AS table_type FROM sqlite_master "
            f"WHERE type IN {types} AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )

    if dialect is Dialect.MYSQL:
        query = (
            "SELECT TABLE_NAME AS table_name, TABLE_TYPE AS table_type, TABLE_SCHEMA AS table_schema "
            "FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA NOT IN ('information_schema', 'mysql', 'performance_schema', 'sys')"
        )
        if schema:
            query += f" AND TABLE_SCHEMA = {_quote_literal(schema)}"
        else:
            query += " AND TABLE_SCHEMA = DATABASE()"
        if not include_views:
            query += " AND TABLE_TYPE = 'BASE TABLE'"
        return query + " ORDER BY TABLE_SCHEMA, TABLE_NAME"

    if dialect is Dialect.MSSQL:
        query = (
            "SELECT TABLE_NAME AS table_name, TABLE_TYPE AS table_type, TABLE_SCHEMA AS table_schema "
            "FROM INFORMATION_SCHEMA.TABLES WHERE 1 = 1"
        )
        if schema:
            query += f" AND TABLE_SCHEMA = {_quote_literal(schema)}"
        if not include_views:
            query += " AND TABLE_TYPE = 'BASE TABLE'"
        return query + " ORDER BY TABLE_SCHEMA, TABLE_NAME"

    # Postgres and drivers reached through the CLI fallback: ANSI information_schema
    query = (
        "SELECT table_name, table_type, table_schema FROM information_schema.tables "
        "WHERE table_schema NOT IN ('information_schema', 'pg_catalog')"
    )
    if schema:
        query += f" AND table_schema = {_quote_literal(schema)}"
    if not include_views:
        query += " AND table_type = 'BASE TABLE'"
    return query + " ORDER BY table_schema, table_name"


def build_columns_query(dialect: Dialect, table_name: str, schema: Optional[str] = None) -> str:
    """Query describing a table's columns.

    Result columns: ``column_name``, ``data_type``, ``is_nullable``,
    ``column_default`` (SQLite: ``PRAGMA table_info`` shape).
    """
    table = sanitize_identifier(table_name)

    if dialect is Dialect.SQLITE:
        return f"PRAGMA table_info({table})"

    if dialect is Dialect.MYSQL:
        schema_filter = f"TABLE_SCHEMA = {_quote_literal(schema)}" if schema else "TABLE_SCHEMA = DATABASE()"
        return (
            "SELECT COLUMN_NAME AS column_name, COLUMN_TYPE AS data_type, "
            "IS_NULLABLE AS is_nullable, COLUMN_DEFAULT AS column_default "
            f"FROM information_schema.COLUMNS WHERE TABLE_NAME = '{table}' AND {schema_filter} "
            "ORDER BY ORDINAL_POSITION"
        )

    if dialect is Dialect.MSSQL:
        query = (
            "SELECT COLUMN_NAME AS column_name, DATA_TYPE AS data_type, "
            "IS_NULLABLE AS is_nullable, COLUMN_DEFAULT AS column_default "
            f"FROM INFORMATION_SCHEMA.COLUMNS WHERE TABLE_NAME = '{table}'"
        )
        if schema:
            query += f" AND TABLE_SCHEMA = {_quote_literal(schema)}"
        return query + " ORDER BY ORDINAL_POSITION"

    query = (
        "SELECT column_name, data_type, is_nullable, column_default "
        f"FROM information_schema.columns WHERE table_name = '{table}'"
    )
    if schema:
        query += f" AND table_schema = {_quote_literal(schema)}"
    return query + " ORDER BY ordinal_position"


def build_indexes_query(dialect: Dialect, table_name: str) -> Optional[str]:
    """Query listing a table's indexes, one row per indexed column.

    Result columns: ``index_name``, ``column_name``, ``is_unique``. Returns
    None where index metadata is not available (unknown dialects).
    """
    table = sanitize_identifier(table_name)

    if dialect is Dialect.POSTGRES:
        return (
            "SELECT i.relname AS index_name, a.attname AS column_name, ix.indisunique AS is_unique "
            "FROM pg_index ix "
            "JOIN pg_class t ON t.oid = ix.indrelid "
            "JOIN pg_class i ON i.oid = ix.indexrelid "
            "JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS k(attnum, ord) ON true "
            "JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum "
            f"WHERE t.relname = '{table}' "
            "ORDER BY i.relname, k.ord"
        )
    if dialect is Dialect.MYSQL:
        return (
            "SELECT INDEX_NAME AS index_name, COLUMN_NAME AS column_name, "
            "CASE WHEN NON_UNIQUE = 0 THEN 1 ELSE 0 END AS is_unique "
            "FROM information_schema.STATISTICS "
            f"WHERE TABLE_NAME = '{table}' AND TABLE_SCHEMA = DATABASE() "
            "ORDER BY INDEX_NAME, SEQ_IN_INDEX"
        )
    if dialect is Dialect.MSSQL:
        return (
            "SELECT i.name AS index_name, c.name AS column_name, i.is_unique AS is_unique "
            "FROM sys.indexes i "
            "JOIN sys.index_columns ic ON ic.object_id = i.object_id AND ic.index_id = i.index_id "
            "JOIN sys.columns c ON c.object_id = ic.object_id AND c.column_id = ic.column_id "
            f"WHERE i.object_id = OBJECT_ID('{table}') AND i.name IS NOT NULL "
            "ORDER BY i.name, ic.key_ordinal"
        )
    if dialect is Dialect.SQLITE:
        return (
            'SELECT il.name AS index_name, ii.name AS column_name, il."unique" AS is_unique '
            f"FROM pragma_index_list('{table}') AS il, pragma_index_info(il.name) AS ii "
            "ORDER BY il.name, ii.seqno"
        )
    return None


def _column_positions(columns: Sequence[str]) -> dict[str, int]:
    return {str(column).lower(): position for position, column in enumerate(columns)}


def parse_table_schema(
    table_name: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    indexes: Optional[dict[str, IndexSchema]] = None,
) -> TableSchema:
    """Build a TableSchema from a column-introspection result.

    Accepts both the information_schema shape (``column_name``,
    ``data_type``, ``is_nullable``, ``column_default``) and SQLite's
    ``PRAGMA table_info`` shape (``name``, ``type``, ``notnull``,
    ``dflt_value``).
    """
    positions = _column_positions(columns)

    def position(*names: str, default: Optional[int] = None) -> Optional[int]:
        for name in names:
            if name in positions:
                return positions[name]
        return default

    name_at = position("column_name", "name", default=0)
    type_at = position("data_type", "type", default=1)
    nullable_at = position("is_nullable")
    notnull_at = position("notnull")
    default_at = position("column_default", "dflt_value")

    schema = TableSchema(table_name=table_name, indexes=dict(indexes or {}))
    for row in rows:
        name = str(row[name_at])
        if nullable_at is not None:
            nullable = _truthy(row[nullable_at])
        elif notnull_at is not None:
            nullable = not _truthy(row[notnull_at])
        else:
            nullable = True
        default = row[default_at] if default_at is not None else None

        schema.columns[name.lower()] = ColumnSchema(
            name=name,
            type=str(row[type_at]),
            nullable=nullable,
            default_value=None if default is None else str(default),
        )
    return schema


def parse_index_rows(columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> dict[str, IndexSchema]:
    """Group ``(index_name, column_name, is_unique)`` rows into IndexSchemas."""
    positions = _column_positions(columns)
    name_at = positions.get("index_name", 0)
    column_at = positions.get("column_name", 1)
    unique_at = positions.get("is_unique", 2)

    indexes: dict[str, IndexSchema] = {}
    for row in rows:
        name = str(row[name_at])
        index = indexes.get(name.lower())
        if index is None:
            index = indexes[name.lower()] = IndexSchema(name=name, columns=[], unique=_truthy(row[unique_at]))
        index.columns.append(str(row[column_at]))
    return indexes


# =============================================================================
# Comparison
# =============================================================================


def _compare_columns(source: dict[str, ColumnSchema], target: dict[str, ColumnSchema]) -> list[ColumnDiff]:
    source = {name.lower(): column for name, column in source.items()}
    target = {name.lower(): column for name, column in target.items()}
    diffs = []

    for key, source_column in source.items():
        target_column = target.get(key)
        if target_column is None:
            diffs.append(ColumnDiff(source_column.name, "removed", source_type=source_column.type))
            continue

        changes = []
        if normalize_type(source_column.type) != normalize_type(target_column.type):
            changes.append(f"type: {source_column.type} -> {target_column.type}")
        if source_column.nullable != target_column.nullable:
            changes.append(f"nullable: {source_column.nullable} -> {target_column.nullable}")
        if source_column.default_value != target_column.default_value:
            changes.append(
                f"default: {source_column.default_value or 'NULL'} -> {target_column.default_value or 'NULL'}"
            )
        if changes:
            diffs.append(
                ColumnDiff(
                    source_column.name,
                    "modified",
                    source_type=source_column.type,
                    target_type=target_column.type,
                    changes=changes,
                )
            )

    for key, target_column in target.items():
        if key not in source:
            diffs.append(ColumnDiff(target_column.name, "added", target_type=target_column.type))
    return diffs


def _compare_indexes(source: dict[str, IndexSchema], target: dict[str, IndexSchema]) -> list[IndexDiff]:
    source = {name.lower(): index for name, index in source.items()}
    target = {name.lower(): index for name, index in target.items()}
    diffs = []

    for key, source_index in source.items():
        target_index = target.get(key)
        if target_index is None:
            diffs.append(IndexDiff(source_index.name, "removed"))
            continue

        changes = []
        if source_index.columns != target_index.columns:
            changes.append(
                f"columns: [{', '.join(source_index.columns)}] -> [{', '.join(target_index.columns)}]"
            )
        if source_index.unique != target_index.unique:
            changes.append(f"unique: {source_index.unique} -> {target_index.unique}")
        if changes:
            diffs.append(IndexDiff(source_index.name, "modified", changes=changes))

    for key, target_index in target.items():
        if key not in source:
            diffs.append(IndexDiff(target_index.name, "added"))
    return diffs


def compare_schemas(
    source_tables: Iterable[TableSchema],
    target_tables: Iterable[TableSchema],
    source_connection: str,
    target_connection: str,
) -> SchemaDiff:
    """Diff two sets of tables (matched case-insensitively by name).

    Tables only in the source are ``removed``, only in the target ``added``;
    tables in both are ``modified`` if any column or index attribute
    differs, otherwise ``unchanged``.
    """
    source_map = {table.table_name.lower(): table for table in source_tables}
    target_map = {table.table_name.lower(): table for table in target_tables}

    differences: list[TableDiff] = []
    for key, source_table in source_map.items():
        target_table = target_map.get(key)
        if target_table is None:
            differences.append(TableDiff(source_table.table_name, "removed"))
            continue

        column_diffs = _compare_columns(source_table.columns, target_table.columns)
        index_diffs = _compare_indexes(source_table.indexes, target_table.indexes)
        status = "modified" if column_diffs or index_diffs else "unchanged"
        differences.append(TableDiff(source_table.table_name, status, column_diffs, index_diffs))

    for key, target_table in target_map.items():
        if key not in source_map:
            differences.append(TableDiff(target_table.table_name, "added"))

    counts = {status: 0 for status in ("added", "removed", "modified", "unchanged")}
    for table_diff in differences:
        counts[table_diff.status] += 1

    summary = DiffSummary(
        tables_added=counts["added"],
        tables_removed=counts["removed"],
        tables_modified=counts["modified"],
        tables_unchanged=counts["unchanged"],
        total_differences=counts["added"] + counts["removed"] + counts["modified"],
    )
    return SchemaDiff(source_connection, target_connection, differences, summary)


# =============================================================================
# Migration script
# =============================================================================


def _alter_column_type(dialect: Dialect, table: str, column: str, new_type: str) -> str:
    if dialect is Dialect.POSTGRES:
        return f"ALTER TABLE {table} ALTER COLUMN {column} TYPE {new_type};"
    if dialect is Dialect.MYSQL:
        return f"ALTER TABLE {table} MODIFY COLUMN {column} {new_type};"
    if dialect is Dialect.MSSQL:
        return f"ALTER TABLE {table} ALTER COLUMN {column} {new_type};"
    if dialect is Dialect.SQLITE:
        return (
            f"-- SQLite cannot change column types; rebuild {table} to change {column} to {new_type}"
        )
    return f"-- ALTER TABLE {table} ALTER COLUMN {column} TYPE {new_type};"


def generate_migration_script(diff: SchemaDiff, dialect: Dialect) -> str:
    """SQL that moves the source schema towards the target schema.

    Whole-table additions and removals are emitted as commented
    placeholders only; column changes become ALTER TABLE statements in the
    target dialect.
    """
    lines = [
        f"-- Migration script from {diff.source_connection} to {diff.target_connection}",
        f"-- Generated at {datetime.now(tz=timezone.utc).isoformat()}",
        "",
    ]

    for table_diff in diff.differences:
        table = table_diff.table_name
        if table_diff.status == "added":
            lines.append(f"-- Table {table} exists in target but not in source")
            lines.append(f"-- CREATE TABLE {table} (...);")
            lines.append("")
        elif table_diff.status == "removed":
            lines.append(f"-- Table {table} exists in source but not in target")
            lines.append(f"-- DROP TABLE IF EXISTS {table};")
            lines.append("")
        elif table_diff.status == "modified":
            lines.append(f"-- Modify table {table}")
            for column_diff in table_diff.column_diffs:
                column = column_diff.column_name
                if column_diff.status == "added":
                    keyword = "ADD" if dialect is Dialect.MSSQL else "ADD COLUMN"
                    lines.append(f"ALTER TABLE {table} {keyword} {column} {column_diff.target_type};")
                elif column_diff.status == "removed":
                    lines.append(f"ALTER TABLE {table} DROP COLUMN {column};")
                elif normalize_type(column_diff.source_type) != normalize_type(column_diff.target_type):
                    lines.append(_alter_column_type(dialect, table, column, column_diff.target_type))
                else:
                    lines.append(f"-- Column {column}: {'; '.join(column_diff.changes)}")
            for index_diff in table_diff.index_diffs:
                detail = f": {'; '.join(index_diff.changes)}" if index_diff.changes else ""
                lines.append(f"-- Index {index_diff.index_name} {index_diff.status}{detail}")
            lines.append("")

    return "\n".join(lines)
