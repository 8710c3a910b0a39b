"""Plugin-server tools exposed through the MCP clients manager."""

import logging
from typing import Any

from chatbridge.orchestrator.tools.core import (
    ToolContext,
    ToolDescriptor,
    ToolOrigin,
    ToolRuntime,
    _err,
    _ok,
    fail_open,
    sanitize_tool_name,
)
from chatbridge.services.mcp_client import (
    MCPClientsManager,
    MCPConnectionError,
    MCPToolError,
    get_mcp_manager,
    result_to_output,
)

logger = logging.getLogger(__name__)


def _is_allowed(
    server_id: str,
    tool_name: str,
    mentions: list[dict],
    allowed_mcp_servers: dict[str, Any] | None,
) -> bool:
    if mentions:
        for mention in mentions:
            if mention.get("serverId") != server_id:
                continue
            if mention.get("type") == "mcpServer":
                return True
            if mention.get("type") == "mcpTool" and mention.get("name") == tool_name:
                return True
        return False
    if allowed_mcp_servers is None:
        return True
    entry = allowed_mcp_servers.get(server_id)
    if not isinstance(entry, dict):
        return False
    tools = entry.get("tools")
    return tools is None or tool_name in tools


def _handler(manager: MCPClientsManager, server_id: str, tool_name: str):
    async def _call(args: dict[str, Any], runtime: ToolRuntime) -> dict[str, Any]:
        client = manager.get_client(server_id)
        if client is None:
            return _err(f"MCP server for '{tool_name}' is no longer available")
        try:
            result = await runtime.signal.guard(client.call_tool(tool_name, args))
        except MCPToolError as e:
            return _err(e.error_text)
        except MCPConnectionError as e:
            return _err(str(e))
        return _ok(result_to_output(result))

    return _call


@fail_open("mcp")
async def load_mcp_tools(context: ToolContext) -> dict[str, ToolDescriptor]:
    """Tools from every enabled plugin server, restricted by mentions or allow-list."""
    manager = context.mcp_manager or get_mcp_manager()
    manager.sync(context.db)
    mentions = context.mentions_of("mcpServer", "mcpTool")

    tools: dict[str, ToolDescriptor] = {}
    for server in await manager.list_all_tools():
        for tool in server.tools:
            if not _is_allowed(server.server_id, tool.name, mentions, context.allowed_mcp_servers):
                continue
            name = sanitize_tool_name(f"{server.server_name}_{tool.name}")
            tools[name] = ToolDescriptor(
                name=name,
                description=tool.description or tool.name,
                input_schema=tool.inputSchema or {"type": "object", "properties": {}},
                origin=ToolOrigin(
                    kind="mcp",
                    server_id=server.server_id,
                    server_name=server.server_name,
                    origin_tool_name=tool.name,
                ),
                handler=_handler(manager, server.server_id, tool.name),
            )
    logger.debug("Loaded %d MCP tools for user %s", len(tools), context.user_id)
    return tools
