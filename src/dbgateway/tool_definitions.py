"""Tool descriptions for the dbgateway MCP server."""


class ToolDescriptions:
    """Centralized management of tool descriptions."""

    SUPPORTED_DRIVERS = "PostgreSQL, MySQL/MariaDB, SQL Server, SQLite"

    @classmethod
    def get_server_instructions(cls, read_only: bool, connection_count: int) -> str:
        """Instructions sent to the client at initialization."""
        lines = [
            f"**Connections**: {connection_count} configured. Call list_connections to see their ids.",
            f"**Drivers**: {cls.SUPPORTED_DRIVERS} natively; other drivers need the CLI fallback.",
        ]
        if read_only:
            lines.append(
                "**Read-only mode**: ONLY read queries are accepted. write_query, create_table, alter_table, "
                "drop_table and data-modifying statements inside transactions will be rejected."
            )
        return "\n".join(lines)

    @classmethod
    def get_execute_query_description(cls) -> str:
        return """Run a read-only query (SELECT, WITH, EXPLAIN, SHOW, DESCRIBE, PRAGMA).

A row limit is added automatically (LIMIT n, or TOP n on SQL Server) unless the
query already has LIMIT/OFFSET/TOP/FETCH NEXT.

Blocked: DROP DATABASE/SCHEMA, TRUNCATE, GRANT/REVOKE, user management,
SHUTDOWN, and DELETE/UPDATE without WHERE."""

    @classmethod
    def get_write_query_description(cls, read_only: bool = False) -> str:
        description = (
            "Run an INSERT, UPDATE or DELETE statement. UPDATE and DELETE must have a WHERE clause."
        )
        if read_only:
            description += "\nDISABLED: the server runs in read-only mode."
        return description

    @classmethod
    def get_ddl_description(cls, statement: str, read_only: bool = False) -> str:
        description = f"Run a single {statement} statement. Any other statement is rejected."
        if read_only:
            description += "\nDISABLED: the server runs in read-only mode."
        return description

    @classmethod
    def get_drop_table_description(cls) -> str:
        return """Drop a table. Destructive and irreversible.

Without confirm=true nothing happens and a confirmation request is returned.
Ask the user before setting confirm=true."""

    @classmethod
    def get_max_rows_description(cls, default: int) -> str:
        return f"Maximum rows to return (default: {default})"

    @classmethod
    def get_transaction_description(cls, operation: str) -> str:
        descriptions = {
            "begin": (
                "Start a transaction on a pooled connection (PostgreSQL, MySQL/MariaDB, SQL Server). "
                "Returns a transaction_id. Transactions idle for more than an hour are rolled back."
            ),
            "execute": (
                "Run a statement inside an open transaction. Statements of one transaction run "
                "strictly in order on its own connection."
            ),
            "commit": "Commit an open transaction. The transaction_id cannot be used afterwards.",
            "rollback": "Roll back an open transaction. The transaction_id cannot be used afterwards.",
        }
        return descriptions[operation]

    @classmethod
    def get_compare_schemas_description(cls) -> str:
        return """Compare table structure between two connections.

Reports tables added/removed/modified/unchanged, with column (type, nullability,
default) and index (columns, uniqueness) differences. Types are normalized, so
INT4 vs INTEGER vs INT(11) is not a difference.
Set generate_migration=true to also get an ALTER TABLE script for the target dialect."""

    @classmethod
    def get_explain_description(cls) -> str:
        return """Show the execution plan of a query as a tree.

analyze=true executes the query to collect actual timings (read-only queries only).
On SQL Server format="json" also executes the query, so it is limited to read-only queries too.
format="json" gives the richest plans on PostgreSQL, MySQL and SQL Server."""
