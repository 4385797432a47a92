"""EXPLAIN query builders and plan normalization into QueryPlanNode trees."""

import json
import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Sequence
from typing import Any, Optional

from ..models import ExplainResult, QueryPlanNode
from .dialects import Dialect

logger = logging.getLogger(__name__)

_TRAILING_SEMICOLONS = re.compile(r";+\s*$")

# Errors a malformed plan payload can raise while being walked
_PLAN_ERRORS = (ValueError, TypeError, KeyError, AttributeError, IndexError, ET.ParseError)

_POSTGRES_KNOWN_KEYS = frozenset(
    {
        "Node Type",
        "Relation Name",
        "Total Cost",
        "Plan Rows",
        "Plan Width",
        "Actual Total Time",
        "Actual Rows",
        "Plans",
    }
)

_MYSQL_OPERATIONS = (
    "ordering_operation",
    "grouping_operation",
    "duplicates_removal",
    "union_result",
    "materialized_from_subquery",
    "windowing",
)


def explain_executes(dialect: Dialect, analyze: bool = False, fmt: str = "text") -> bool:
    """Whether the EXPLAIN form for these options runs the statement itself.

    SQL Server's structured plans come from ``SET STATISTICS XML``, which
    executes the statement and returns the actual plan alongside its rows.
    """
    return analyze or (dialect is Dialect.MSSQL and fmt in ("json", "xml"))


def explain_session(dialect: Dialect, fmt: str = "text") -> Optional[tuple[str, str]]:
    """Session statements that must run in their own batches around the EXPLAIN.

    Returns:
        ``(setup, teardown)``, or None when the EXPLAIN is a single statement
    """
    if dialect is Dialect.MSSQL and fmt not in ("json", "xml"):
        # SET SHOWPLAN_TEXT must be the only statement in its batch
        return "SET SHOWPLAN_TEXT ON", "SET SHOWPLAN_TEXT OFF"
    return None


def build_explain_query(dialect: Dialect, sql: str, analyze: bool = False, fmt: str = "text") -> str:
    """Wrap ``sql`` in the dialect's EXPLAIN form.

    Args:
        dialect: Target dialect
        sql: Statement to explain (trailing semicolons are dropped)
        analyze: Execute the statement to collect actual timings where supported
        fmt: "text" or "json" ("xml" is accepted for SQL Server)
    """
    statement = _TRAILING_SEMICOLONS.sub("", sql.strip())
    structured = fmt in ("json", "xml")

    if dialect is Dialect.POSTGRES:
        options = []
        if analyze:
            options.append("ANALYZE")
        if fmt == "json":
            options.append("FORMAT JSON")
        return f"EXPLAIN ({', '.join(options)}) {statement}" if options else f"EXPLAIN {statement}"
    if dialect is Dialect.MYSQL:
        if fmt == "json":
            return f"EXPLAIN FORMAT=JSON {statement}"
        return f"EXPLAIN ANALYZE {statement}" if analyze else f"EXPLAIN {statement}"
    if dialect is Dialect.MSSQL:
        if structured:
            return f"SET STATISTICS XML ON; {statement}; SET STATISTICS XML OFF;"
        # Run between the explain_session statements
        return statement
    if dialect is Dialect.SQLITE:
        return f"EXPLAIN QUERY PLAN {statement}"
    return f"EXPLAIN {statement}"


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _decode(payload: Any) -> Any:
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    if isinstance(payload, str):
        return json.loads(payload)
    return payload


# =============================================================================
# Postgres
# =============================================================================


def _postgres_node(node: dict[str, Any]) -> QueryPlanNode:
    return QueryPlanNode(
        operation=str(node.get("Node Type", "Unknown")),
        object=node.get("Relation Name"),
        cost=_to_float(node.get("Total Cost")),
        rows=_to_float(node.get("Plan Rows")),
        width=_to_int(node.get("Plan Width")),
        actual_time=_to_float(node.get("Actual Total Time")),
        actual_rows=_to_float(node.get("Actual Rows")),
        details={key: value for key, value in node.items() if key not in _POSTGRES_KNOWN_KEYS},
        children=[_postgres_node(child) for child in node.get("Plans", [])],
    )


def _parse_postgres_json(rows: Sequence[Sequence[Any]], query: str) -> ExplainResult:
    document = _decode(rows[0][0])
    if isinstance(document, dict):
        document = [document]
    top = document[0]
    root = _postgres_node(top["Plan"])
    return ExplainResult(
        query=query,
        plan=[root],
        format="json",
        planning_time=_to_float(top.get("Planning Time")),
        execution_time=_to_float(top.get("Execution Time")),
        total_cost=root.cost,
    )


# =============================================================================
# MySQL
# =============================================================================


def _mysql_details(block: dict[str, Any]) -> dict[str, Any]:
    details = {}
    for key, value in block.items():
        if key == "cost_info" or not isinstance(value, (dict, list)):
            details[key] = value
        elif isinstance(value, list) and all(not isinstance(item, (dict, list)) for item in value):
            details[key] = value
    return details


def _mysql_table(table: dict[str, Any]) -> QueryPlanNode:
    cost_info = table.get("cost_info") or {}
    return QueryPlanNode(
        operation=str(table.get("access_type", "table")),
        object=table.get("table_name"),
        cost=_to_float(cost_info.get("prefix_cost")),
        rows=_to_float(table.get("rows_examined_per_scan")),
        details={
            key: value
            for key, value in _mysql_details(table).items()
            if key not in ("access_type", "table_name", "rows_examined_per_scan")
        },
        children=_mysql_children(table),
    )


def _mysql_query_block(block: dict[str, Any]) -> QueryPlanNode:
    cost_info = block.get("cost_info") or {}
    return QueryPlanNode(
        operation="Query Block",
        cost=_to_float(cost_info.get("query_cost")),
        details=_mysql_details(block),
        children=_mysql_children(block),
    )


def _mysql_children(block: dict[str, Any]) -> list[QueryPlanNode]:
    children = []
    for key, value in block.items():
        if key == "table" and isinstance(value, dict):
            children.append(_mysql_table(value))
        elif key == "query_block" and isinstance(value, dict):
            children.append(_mysql_query_block(value))
        elif key in _MYSQL_OPERATIONS and isinstance(value, dict):
            children.append(
                QueryPlanNode(
                    operation=key.replace("_", " ").title(),
                    details=_mysql_details(value),
                    children=_mysql_children(value),
                )
            )
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, dict):
                    children.extend(_mysql_children(item))
    return children


def _parse_mysql_json(rows: Sequence[Sequence[Any]], query: str) -> ExplainResult:
    document = _decode(rows[0][0])
    root = _mysql_query_block(document["query_block"])
    return ExplainResult(query=query, plan=[root], format="json", total_cost=root.cost)


def _parse_mysql_table(rows: Sequence[Sequence[Any]], columns: Sequence[str], query: str) -> ExplainResult:
    """Classic tabular EXPLAIN: one row per table access."""
    names = [str(column).lower() for column in columns]
    plan = []
    for row in rows:
        record = dict(zip(names, row))
        plan.append(
            QueryPlanNode(
                operation=str(record.get("type") or "Unknown"),
                object=record.get("table"),
                rows=_to_float(record.get("rows")),
                details={
                    key: value for key, value in record.items() if key not in ("type", "table", "rows")
                },
            )
        )
    return ExplainResult(query=query, plan=plan, format="text")


# =============================================================================
# SQL Server
# =============================================================================


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_relops(element: ET.Element) -> list[ET.Element]:
    """Nearest RelOp descendants, not descending into nested RelOps."""
    found = []
    for child in element:
        if _local_name(child.tag) == "RelOp":
            found.append(child)
        else:
            found.extend(_child_relops(child))
    return found


def _relop_object(relop: ET.Element) -> Optional[str]:
    for child in relop:
        # The operator element (IndexScan, TableScan, ...) carries the Object
        for item in child:
            if _local_name(item.tag) == "Object":
                table = item.get("Table")
                if table:
                    return table.strip("[]")
    return None


def _relop_runtime(relop: ET.Element) -> tuple[Optional[float], Optional[float]]:
    actual_rows = actual_time = None
    for child in relop:
        if _local_name(child.tag) != "RunTimeInformation":
            continue
        for counter in child:
            rows = _to_float(counter.get("ActualRows"))
            if rows is not None:
                actual_rows = (actual_rows or 0.0) + rows
            elapsed = _to_float(counter.get("ActualElapsedms"))
            if elapsed is not None:
                actual_time = max(actual_time or 0.0, elapsed)
    return actual_time, actual_rows


def _mssql_node(relop: ET.Element) -> QueryPlanNode:
    actual_time, actual_rows = _relop_runtime(relop)
    known = ("PhysicalOp", "EstimatedTotalSubtreeCost", "EstimateRows", "AvgRowSize")
    return QueryPlanNode(
        operation=relop.get("PhysicalOp", "Unknown"),
        object=_relop_object(relop),
        cost=_to_float(relop.get("EstimatedTotalSubtreeCost")),
        rows=_to_float(relop.get("EstimateRows")),
        width=_to_int(relop.get("AvgRowSize")),
        actual_time=actual_time,
        actual_rows=actual_rows,
        details={key: value for key, value in relop.attrib.items() if key not in known},
        children=[_mssql_node(child) for child in _child_relops(relop)],
    )


def _parse_mssql_xml(rows: Sequence[Sequence[Any]], query: str) -> ExplainResult:
    payload = rows[0][0]
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    document = ET.fromstring(payload)

    plan = [_mssql_node(relop) for relop in _child_relops(document)]
    if not plan:
        raise ValueError("showplan contains no RelOp elements")

    total_cost = None
    for element in document.iter():
        if _local_name(element.tag) == "StmtSimple":
            total_cost = _to_float(element.get("StatementSubTreeCost"))
            break
    return ExplainResult(query=query, plan=plan, format="xml", total_cost=total_cost)


# =============================================================================
# SQLite
# =============================================================================


def _parse_sqlite(rows: Sequence[Sequence[Any]], columns: Optional[Sequence[str]], query: str) -> ExplainResult:
    """EXPLAIN QUERY PLAN rows ``(id, parent, notused, detail)`` as a tree."""
    if columns:
        positions = {str(column).lower(): position for position, column in enumerate(columns)}
    else:
        positions = {}
    id_at = positions.get("id", 0)
    parent_at = positions.get("parent", 1)
    detail_at = positions.get("detail", 3)

    nodes: dict[int, QueryPlanNode] = {}
    roots = []
    for row in rows:
        node_id = int(row[id_at])
        parent_id = int(row[parent_at])
        node = QueryPlanNode(
            operation=str(row[detail_at]),
            details={"id": node_id, "parent": parent_id},
        )
        nodes[node_id] = node
        parent = nodes.get(parent_id)
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)
    return ExplainResult(query=query, plan=roots, format="text")


# =============================================================================
# Fallback
# =============================================================================


def _parse_flat(rows: Sequence[Sequence[Any]], query: str) -> ExplainResult:
    """One node per output line; never raises."""
    plan = []
    for row in rows:
        cells = list(row) if isinstance(row, (list, tuple)) else [row]
        cells = [cell for cell in cells if cell is not None]
        if not cells:
            continue
        text = str(cells[0]) if len(cells) == 1 else " | ".join(str(cell) for cell in cells)
        for line in text.splitlines():
            if line.strip():
                plan.append(QueryPlanNode(operation=line.rstrip()))
    return ExplainResult(query=query, plan=plan, format="text")


def parse_explain_output(
    dialect: Dialect,
    rows: Sequence[Sequence[Any]],
    fmt: str = "text",
    columns: Optional[Sequence[str]] = None,
    query: str = "",
) -> ExplainResult:
    """Normalize raw EXPLAIN output into an ExplainResult.

    JSON (Postgres, MySQL) and showplan XML (SQL Server) become nested
    trees; SQLite query plans are rebuilt from their parent links. Anything
    that cannot be parsed falls back to one flat node per output line.
    """
    if not rows:
        return ExplainResult(query=query, plan=[], format=fmt)

    try:
        if dialect is Dialect.POSTGRES and fmt == "json":
            return _parse_postgres_json(rows, query)
        if dialect is Dialect.MYSQL and fmt == "json":
            return _parse_mysql_json(rows, query)
        if dialect is Dialect.MYSQL and columns and len(columns) > 1:
            return _parse_mysql_table(rows, columns, query)
        if dialect is Dialect.MSSQL and fmt in ("json", "xml"):
            return _parse_mssql_xml(rows, query)
        if dialect is Dialect.SQLITE:
            return _parse_sqlite(rows, columns, query)
    except _PLAN_ERRORS as e:
        logger.debug(f"Falling back to flat plan for {dialect.value}: {e}")

    return _parse_flat(rows, query)
