"""Plain-text rendering of gateway results for tool output."""

from typing import Any, Optional

from ..models import ExplainResult, QueryPlanNode, QueryResult, SchemaDiff

RESULT_SEPARATOR = "=" * 80
ROW_SEPARATOR = "-" * 80


def _cell(value: Any) -> str:
    return "NULL" if value is None else str(value)


def format_query_result(result: QueryResult, connection_name: str = "unknown") -> str:
    """Format a QueryResult as an aligned text table.

    Layout:
    - Section headers with separators
    - Column-aligned rows, numbered for reference
    - Row count and execution time footer

    Args:
        result: Canonical query result
        connection_name: Name of the connection (for context)

    Returns:
        Plain text formatted results
    """
    header = [
        RESULT_SEPARATOR,
        "QUERY RESULTS",
        RESULT_SEPARATOR,
        f"Connection: {connection_name}",
        f"Query: {result.query}",
    ]

    if not result.columns:
        # Statement without a result set (INSERT, UPDATE, DDL)
        header.extend([
            f"Rows affected: {result.row_count}",
            f"Execution time: {result.execution_time:.1f} ms",
            RESULT_SEPARATOR,
            "",
        ])
        return "\n".join(header)

    if not result.rows:
        header.extend([
            "Result: No rows returned (empty result set)",
            RESULT_SEPARATOR,
            "",
        ])
        return "\n".join(header)

    widths = [len(str(column)) for column in result.columns]
    for row in result.rows:
        for position, value in enumerate(row[: len(widths)]):
            widths[position] = max(widths[position], len(_cell(value)))

    output = header + [f"Rows returned: {result.row_count}", "", ROW_SEPARATOR]
    output.append("  ".join(["Row#"] + [str(column).ljust(widths[i]) for i, column in enumerate(result.columns)]))
    output.append(ROW_SEPARATOR)

    for index, row in enumerate(result.rows, start=1):
        cells = [f"{index:4d}"] + [_cell(value).ljust(widths[i]) for i, value in enumerate(row[: len(widths)])]
        output.append("  ".join(cells))

    output.extend([
        ROW_SEPARATOR,
        f"Total rows: {result.row_count}  ({result.execution_time:.1f} ms)",
        RESULT_SEPARATOR,
        "",
    ])
    return "\n".join(output)


def _plan_lines(node: QueryPlanNode, depth: int, lines: list[str]) -> None:
    parts = [node.operation]
    if node.object:
        parts.append(f"on {node.object}")
    if node.cost is not None:
        parts.append(f"cost={node.cost}")
    if node.rows is not None:
        parts.append(f"rows={node.rows}")
    if node.actual_time is not None:
        parts.append(f"actual_time={node.actual_time}")
    lines.append(f"{'  ' * depth}-> {' '.join(parts)}")
    for child in node.children:
        _plan_lines(child, depth + 1, lines)


def format_explain_result(explain: ExplainResult) -> str:
    lines = [RESULT_SEPARATOR, "QUERY PLAN", RESULT_SEPARATOR, f"Query: {explain.query}", ""]
    for root in explain.plan:
        _plan_lines(root, 0, lines)
    if explain.planning_time is not None:
        lines.append(f"Planning time: {explain.planning_time} ms")
    if explain.execution_time is not None:
        lines.append(f"Execution time: {explain.execution_time} ms")
    if explain.total_cost is not None:
        lines.append(f"Total cost: {explain.total_cost}")
    lines.extend([RESULT_SEPARATOR, ""])
    return "\n".join(lines)


def format_schema_diff(diff: SchemaDiff) -> str:
    summary = diff.summary
    lines = [
        RESULT_SEPARATOR,
        f"SCHEMA DIFF: {diff.source_connection} -> {diff.target_connection}",
        RESULT_SEPARATOR,
        f"Added: {summary.tables_added}  Removed: {summary.tables_removed}  "
        f"Modified: {summary.tables_modified}  Unchanged: {summary.tables_unchanged}",
        ROW_SEPARATOR,
    ]
    for table_diff in diff.differences:
        if table_diff.status == "unchanged":
            continue
        lines.append(f"[{table_diff.status}] {table_diff.table_name}")
        for column_diff in table_diff.column_diffs:
            detail = f" ({'; '.join(column_diff.changes)})" if column_diff.changes else ""
            lines.append(f"    column {column_diff.column_name}: {column_diff.status}{detail}")
        for index_diff in table_diff.index_diffs:
            detail = f" ({'; '.join(index_diff.changes)})" if index_diff.changes else ""
            lines.append(f"    index {index_diff.index_name}: {index_diff.status}{detail}")
    lines.extend([RESULT_SEPARATOR, ""])
    return "\n".join(lines)


def format_size(size_bytes: Optional[int]) -> Optional[str]:
    """Human-readable byte count, e.g. ``'12.0 KB'``."""
    if size_bytes is None:
        return None
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{int(size)} B" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
