"""dbgateway MCP server - uniform database access for AI agents."""

import asyncio
import json
import logging
import sys
from typing import Any, Optional

import mcp.server.stdio
import mcp.types as types
from mcp.server import Server
from mcp.server.lowlevel import NotificationOptions
from mcp.server.models import InitializationOptions

from .config import GatewayConfig, load_connections
from .constants import EXIT_FAILURE, EXIT_SUCCESS, SERVER_NAME, SERVER_VERSION
from .database.dialects import classify_driver
from .database.formatting import format_explain_result, format_query_result, format_schema_diff
from .database.logging import redact_secrets
from .errors import ConfigurationError, GatewayError, ValidationError
from .gateway import Gateway
from .tool_definitions import ToolDescriptions

# Set up dbgateway logger with flushing
logger = logging.getLogger("dbgateway")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler(sys.stderr)
handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
handler.flush = lambda: sys.stderr.flush()  # Force flush after each log
logger.addHandler(handler)

CONFIRMATION_REQUIRED = "Safety confirmation required. Set confirm=true to proceed with dropping the table."

USAGE = """Usage: dbgateway [--connections <file>] [--read-only] [--debug] [--test]

Options:
  --connections <file>  - JSON file with connection descriptors
                          (default: DBGATEWAY_CONNECTIONS environment variable)
  --read-only           - Reject every statement that is not a read
  --debug               - Verbose logging
  --test                - Test every configured connection and exit

Environment:
  DBGATEWAY_POOL_MIN, DBGATEWAY_POOL_MAX, DBGATEWAY_QUERY_TIMEOUT,
  DBGATEWAY_MAX_ROWS, DBGATEWAY_READ_ONLY, DBGATEWAY_CLI_PATH, ...
"""


class DbGatewayServer(Server):
    """Extended MCP Server that owns the database gateway."""

    def __init__(self, name: str, gateway: Gateway):
        super().__init__(name)
        self.gateway = gateway


def _require(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"Missing required parameter '{key}'")
    return value


def _json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


async def dispatch_tool(gateway: Gateway, name: str, arguments: dict[str, Any]) -> str:
    """Run one tool call against the gateway and render its text result.

    Raises:
        GatewayError: Propagated for the caller to report
    """
    if name == "list_connections":
        return _json(gateway.list_connections())

    if name == "get_connection_info":
        return _json(gateway.get_connection_info(_require(arguments, "connection_id")))

    if name == "execute_query":
        connection_id = _require(arguments, "connection_id")
        descriptor = gateway.get_connection(connection_id)
        result = await gateway.execute(
            descriptor,
            _require(arguments, "query").strip(),
            read_only=True,
            max_rows=arguments.get("max_rows") or gateway.config.max_rows,
        )
        return format_query_result(result, descriptor.name)

    if name == "write_query":
        descriptor = gateway.get_connection(_require(arguments, "connection_id"))
        result = await gateway.write(descriptor, _require(arguments, "query"))
        return _json({
            "query": result.query,
            "connection": descriptor.name,
            "execution_time_ms": result.execution_time,
            "affected_rows": result.row_count,
            "success": True,
        })

    if name in ("create_table", "alter_table"):
        descriptor = gateway.get_connection(_require(arguments, "connection_id"))
        run = gateway.create_table if name == "create_table" else gateway.alter_table
        result = await run(descriptor, _require(arguments, "query"))
        return _json({
            "success": True,
            "message": f"Table {'created' if name == 'create_table' else 'altered'} successfully",
            "connection": descriptor.name,
            "execution_time_ms": result.execution_time,
        })

    if name == "drop_table":
        table_name = _require(arguments, "table_name")
        if not arguments.get("confirm"):
            # Not an error: the caller has to ask for confirmation first
            return _json({"success": False, "confirmation_required": True, "message": CONFIRMATION_REQUIRED})
        result = await gateway.drop_table(_require(arguments, "connection_id"), table_name)
        return _json({
            "success": True,
            "message": f"Table '{table_name}' dropped successfully",
            "execution_time_ms": result.execution_time,
        })

    if name == "get_table_schema":
        schema = await gateway.get_table_schema(
            _require(arguments, "connection_id"),
            _require(arguments, "table_name"),
            arguments.get("schema"),
        )
        return _json(schema.to_dict())

    if name == "list_tables":
        tables = await gateway.list_tables(_require(arguments, "connection_id"), arguments.get("schema"))
        return _json({"tables": tables, "count": len(tables)})

    if name == "test_connection":
        return _json(await gateway.test_connection(_require(arguments, "connection_id")))

    if name == "get_database_stats":
        stats = await gateway.get_database_stats(_require(arguments, "connection_id"))
        return _json(stats.to_dict())

    if name == "begin_transaction":
        result = await gateway.begin_transaction(_require(arguments, "connection_id"))
        return _json(result.to_dict())

    if name == "execute_in_transaction":
        result = await gateway.execute_in_transaction(
            _require(arguments, "transaction_id"), _require(arguments, "query")
        )
        return format_query_result(result, f"transaction {arguments['transaction_id']}")

    if name == "commit_transaction":
        result = await gateway.commit_transaction(_require(arguments, "transaction_id"))
        return _json(result.to_dict())

    if name == "rollback_transaction":
        result = await gateway.rollback_transaction(_require(arguments, "transaction_id"))
        return _json(result.to_dict())

    if name == "get_pool_stats":
        connection_id = arguments.get("connection_id")
        connection_ids = [connection_id] if connection_id else gateway.pools.pool_ids
        stats = [gateway.get_stats(pool_id) for pool_id in connection_ids]
        return _json({
            "pools": [entry.to_dict() for entry in stats if entry is not None],
            "active_transactions": len(gateway.transactions.get_active_transactions()),
        })

    if name == "compare_schemas":
        source = gateway.get_connection(_require(arguments, "source_connection_id"))
        target = gateway.get_connection(_require(arguments, "target_connection_id"))
        diff = await gateway.compare_schemas(source, target, arguments.get("tables"), arguments.get("schema"))
        text = format_schema_diff(diff)
        if arguments.get("generate_migration"):
            script = gateway.generate_migration_script(diff, classify_driver(target.driver))
            text += "\n" + script + "\n"
        return text

    if name == "explain_query":
        explain = await gateway.explain(
            _require(arguments, "connection_id"),
            _require(arguments, "query"),
            analyze=bool(arguments.get("analyze", False)),
            fmt=arguments.get("format", "text"),
        )
        return format_explain_result(explain)

    raise ValidationError(f"Unknown tool '{name}'")


def build_tools(server: DbGatewayServer) -> list[types.Tool]:
    """Tool list advertised to the client."""
    config = server.gateway.config
    connection_id = {"type": "string", "description": "Connection id (see list_connections)"}
    transaction_id = {"type": "string", "description": "Transaction id returned by begin_transaction"}
    query = {"type": "string", "description": "SQL statement"}

    def tool(name: str, description: str, properties: dict[str, Any], required: list[str]) -> types.Tool:
        return types.Tool(
            name=name,
            description=description,
            inputSchema={"type": "object", "properties": properties, "required": required},
        )

    return [
        tool("list_connections", "List configured database connections (credentials redacted).", {}, []),
        tool(
            "get_connection_info",
            "Show one connection's details and pool state (credentials redacted).",
            {"connection_id": connection_id},
            ["connection_id"],
        ),
        tool(
            "execute_query",
            ToolDescriptions.get_execute_query_description(),
            {
                "connection_id": connection_id,
                "query": query,
                "max_rows": {
                    "type": "integer",
                    "description": ToolDescriptions.get_max_rows_description(config.max_rows),
                },
            },
            ["connection_id", "query"],
        ),
        tool(
            "write_query",
            ToolDescriptions.get_write_query_description(config.read_only),
            {"connection_id": connection_id, "query": query},
            ["connection_id", "query"],
        ),
        tool(
            "create_table",
            ToolDescriptions.get_ddl_description("CREATE TABLE", config.read_only),
            {"connection_id": connection_id, "query": {"type": "string", "description": "CREATE TABLE statement"}},
            ["connection_id", "query"],
        ),
        tool(
            "alter_table",
            ToolDescriptions.get_ddl_description("ALTER TABLE", config.read_only),
            {"connection_id": connection_id, "query": {"type": "string", "description": "ALTER TABLE statement"}},
            ["connection_id", "query"],
        ),
        tool(
            "drop_table",
            ToolDescriptions.get_drop_table_description(),
            {
                "connection_id": connection_id,
                "table_name": {"type": "string", "description": "Table to drop"},
                "confirm": {"type": "boolean", "description": "Must be true to actually drop the table"},
            },
            ["connection_id", "table_name"],
        ),
        tool(
            "get_table_schema",
            "Describe a table's columns and indexes.",
            {
                "connection_id": connection_id,
                "table_name": {"type": "string", "description": "Table name"},
                "schema": {"type": "string", "description": "Schema name (optional)"},
            },
            ["connection_id", "table_name"],
        ),
        tool(
            "list_tables",
            "List user tables of a connection.",
            {"connection_id": connection_id, "schema": {"type": "string", "description": "Schema name (optional)"}},
            ["connection_id"],
        ),
        tool(
            "test_connection",
            "Open a fresh connection, run a test query and report the server version.",
            {"connection_id": connection_id},
            ["connection_id"],
        ),
        tool(
            "get_database_stats",
            "Table count, size, server version and uptime of a database.",
            {"connection_id": connection_id},
            ["connection_id"],
        ),
        tool(
            "begin_transaction",
            ToolDescriptions.get_transaction_description("begin"),
            {"connection_id": connection_id},
            ["connection_id"],
        ),
        tool(
            "execute_in_transaction",
            ToolDescriptions.get_transaction_description("execute"),
            {"transaction_id": transaction_id, "query": query},
            ["transaction_id", "query"],
        ),
        tool(
            "commit_transaction",
            ToolDescriptions.get_transaction_description("commit"),
            {"transaction_id": transaction_id},
            ["transaction_id"],
        ),
        tool(
            "rollback_transaction",
            ToolDescriptions.get_transaction_description("rollback"),
            {"transaction_id": transaction_id},
            ["transaction_id"],
        ),
        tool(
            "get_pool_stats",
            "Connection pool statistics (all pools when connection_id is omitted).",
            {"connection_id": connection_id},
            [],
        ),
        tool(
            "compare_schemas",
            ToolDescriptions.get_compare_schemas_description(),
            {
                "source_connection_id": connection_id,
                "target_connection_id": connection_id,
                "tables": {"type": "array", "items": {"type": "string"}, "description": "Limit to these tables"},
                "schema": {"type": "string", "description": "Schema name (optional)"},
                "generate_migration": {"type": "boolean", "description": "Append a migration script"},
            },
            ["source_connection_id", "target_connection_id"],
        ),
        tool(
            "explain_query",
            ToolDescriptions.get_explain_description(),
            {
                "connection_id": connection_id,
                "query": query,
                "analyze": {"type": "boolean", "description": "Execute to collect actual timings"},
                "format": {"type": "string", "enum": ["text", "json"], "description": "Plan format"},
            },
            ["connection_id", "query"],
        ),
    ]


async def test_connections(gateway: Gateway) -> bool:
    """Test every configured connection.

    Returns:
        True if all connections answered, False otherwise
    """
    if not gateway.connections:
        print("No connections configured.")
        return False

    all_ok = True
    for connection_id in gateway.connections:
        report = await gateway.test_connection(connection_id)
        if report["success"]:
            print(f"[PASSED] {report['name']} ({report['dialect']}): {report['version']}")
        else:
            all_ok = False
            print(f"[FAILED] {report['name']} ({report['dialect']}): {report['error']}")
    return all_ok


def parse_args(args: list[str]) -> dict[str, Any]:
    """Parse command line flags.

    Raises:
        ConfigurationError: On unknown flags or a missing value
    """
    options: dict[str, Any] = {"connections": None, "read_only": False, "debug": False, "test": False}
    i = 0
    while i < len(args):
        if args[i] == "--connections":
            if i + 1 >= len(args):
                raise ConfigurationError("--connections requires a value")
            options["connections"] = args[i + 1]
            i += 2
            continue
        if args[i] == "--read-only":
            options["read_only"] = True
        elif args[i] == "--debug":
            options["debug"] = True
        elif args[i] == "--test":
            options["test"] = True
        else:
            raise ConfigurationError(f"Unknown argument '{args[i]}'")
        i += 1
    return options


async def main():
    """Parse command line arguments and run the server."""
    try:
        options = parse_args(sys.argv[1:])
        config = GatewayConfig.from_env()
        if options["read_only"]:
            config.read_only = True
        if options["debug"]:
            config.debug = True
        connections = load_connections(options["connections"])
    except ConfigurationError as e:
        sys.stderr.write(f"Error: {e}\n\n{USAGE}")
        sys.exit(EXIT_FAILURE)

    if config.debug:
        logger.setLevel(logging.DEBUG)

    gateway = Gateway(config, connections)
    server = DbGatewayServer(SERVER_NAME, gateway)

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        """List available resources (none for this server)."""
        return []

    @server.list_prompts()
    async def list_prompts() -> list[types.Prompt]:
        """List available prompts (none for this server)."""
        return []

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return build_tools(server)

    @server.call_tool()
    async def call_tool(name: str, arguments: Optional[dict]) -> list[types.TextContent]:
        """Handle tool calls."""
        arguments = arguments or {}
        logger.debug(f"call_tool {name}: {redact_secrets(arguments)}")
        try:
            text = await dispatch_tool(server.gateway, name, arguments)
        except GatewayError as e:
            logger.error(f"Error in {name}: {type(e).__name__}: {e}")
            text = f"Error: {e}"
        except Exception as e:
            logger.exception(f"Unexpected error in {name}")
            text = f"Error: Internal error ({type(e).__name__})"
        return [types.TextContent(type="text", text=text)]

    # Show startup information
    logger.info("Starting dbgateway MCP Server")
    logger.info(f"Connections: {len(connections)}")
    logger.info(f"Read-only: {'yes' if config.read_only else 'no'}")
    logger.info(f"Pool: min={config.pool_min} max={config.pool_max}")

    if options["test"]:
        try:
            success = await test_connections(gateway)
        finally:
            await gateway.shutdown()
        sys.exit(EXIT_SUCCESS if success else EXIT_FAILURE)

    try:
        await gateway.start()
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            init_options = InitializationOptions(
                server_name=SERVER_NAME,
                server_version=SERVER_VERSION,
                capabilities=server.get_capabilities(
                    notification_options=NotificationOptions(),
                    experimental_capabilities={},
                ),
                instructions=ToolDescriptions.get_server_instructions(config.read_only, len(connections)),
            )
            await server.run(read_stream, write_stream, init_options)
    except Exception as e:
        logger.exception(f"MCP Server error: {type(e).__name__}: {e}")
        sys.exit(EXIT_FAILURE)
    finally:
        # Transport is closed: no new calls arrive past this point
        await gateway.shutdown()


def run():
    """Entry point for the dbgateway command."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
