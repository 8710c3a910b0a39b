"""Async MCP client with retry and connection lifecycle, plus a per-process manager.

``MCPClient`` talks to one plugin server over stdio or streamable HTTP.
``MCPClientsManager`` owns one client per enabled ``mcp_servers`` row,
connects lazily and keeps sessions open across turns.

Example:
    client = MCPClient.from_config("search", {"command": "uvx", "args": ["mcp-search"]})
    async with client:
        result = await client.call_tool("search", {"query": "python"})
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import TextContent
from sqlalchemy.orm import Session

from chatbridge.db.models import McpServer

logger = logging.getLogger(__name__)


class MCPToolError(Exception):
    """Tool returned isError=True after retries exhausted.

    Attributes:
        tool_name: Name of the MCP tool that failed.
        error_text: Raw error text from the tool response.
    """

    def __init__(self, tool_name: str, error_text: str) -> None:
        self.tool_name = tool_name
        self.error_text = error_text
        super().__init__(f"MCP tool '{tool_name}' failed: {error_text}")


class MCPConnectionError(Exception):
    """Failed to spawn or connect to an MCP server.

    Attributes:
        server: Server name (or command) that failed.
        reason: Description of why the connection failed.
    """

    def __init__(self, server: str, reason: str) -> None:
        self.server = server
        self.reason = reason
        super().__init__(f"Failed to connect to MCP server '{server}': {reason}")


_DEFAULT_RETRYABLE_PATTERNS = [
    "429", "503", "502", "rate limit", "timeout", "connection",
]


def _default_is_retryable(error_text: str) -> bool:
    lower = error_text.lower()
    return any(p in lower for p in _DEFAULT_RETRYABLE_PATTERNS)


def extract_texts(result: Any) -> list[str]:
    """Return every TextContent text in a CallToolResult."""
    return [item.text for item in getattr(result, "content", None) or [] if isinstance(item, TextContent)]


def result_to_output(result: Any) -> Any:
    """Convert a successful CallToolResult into a JSON-friendly tool output.

    Structured content wins; a single JSON text is parsed; anything else is
    returned as joined text.
    """
    structured = getattr(result, "structuredContent", None)
    if structured:
        return structured
    texts = extract_texts(result)
    if len(texts) == 1:
        try:
            return json.loads(texts[0])
        except json.JSONDecodeError:
            return texts[0]
    return "\n\n".join(texts)


class MCPClient:
    """Async MCP client for a single server.

    Args:
        name: Server display name (used in logs and errors).
        server_params: StdioServerParameters for stdio servers.
        url: Endpoint for streamable HTTP servers (exclusive with server_params).
        headers: Extra HTTP headers for streamable HTTP servers.
        max_retries: Max retry attempts for transient tool errors.
        base_delay: Base delay in seconds (doubles each retry).
        is_retryable: Classifier for retryable error text.
    """

    def __init__(
        self,
        name: str,
        server_params: StdioServerParameters | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        max_retries: int = 2,
        base_delay: float = 0.5,
        is_retryable: Callable[[str], bool] | None = None,
    ) -> None:
        if server_params is None and not url:
            raise ValueError("MCPClient needs server_params or url")
        self._name = name
        self._server_params = server_params
        self._url = url
        self._headers = headers or {}
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._is_retryable = is_retryable or _default_is_retryable
        self._session: ClientSession | None = None
        self._transport_context: Any = None
        self._session_context: Any = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, name: str, config: dict) -> "MCPClient":
        """Build a client from an ``mcp_servers.config_json`` dict."""
        if config.get("url"):
            return cls(name, url=str(config["url"]), headers=config.get("headers") or None)
        if not config.get("command"):
            raise ValueError(f"MCP server '{name}' config has neither url nor command")
        params = StdioServerParameters(
            command=str(config["command"]),
            args=[str(a) for a in config.get("args") or []],
            env=config.get("env") or None,
        )
        return cls(name, server_params=params)

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    async def __aenter__(self) -> "MCPClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Connect if not already connected.

        Raises:
            MCPConnectionError: If the server fails to spawn or initialize.
        """
        async with self._lock:
            if self._session is not None:
                return
            try:
                await self._cleanup()
                if self._server_params is not None:
                    self._transport_context = stdio_client(self._server_params)
                else:
                    self._transport_context = streamablehttp_client(self._url, headers=self._headers)
                streams = await self._transport_context.__aenter__()
                read_stream, write_stream = streams[0], streams[1]
                self._session_context = ClientSession(read_stream, write_stream)
                self._session = await self._session_context.__aenter__()
                await self._session.initialize()
                logger.info("MCP client connected to '%s'", self._name)
            except Exception as e:
                await self._cleanup()
                raise MCPConnectionError(server=self._name, reason=str(e)) from e

    async def disconnect(self) -> None:
        await self._cleanup()

    async def _cleanup(self) -> None:
        if self._session_context is not None:
            try:
                await self._session_context.__aexit__(None, None, None)
            except Exception:
                logger.debug("MCP session close failed for '%s'", self._name, exc_info=True)
            self._session_context = None
            self._session = None

        if self._transport_context is not None:
            try:
                await self._transport_context.__aexit__(None, None, None)
            except Exception:
                logger.debug("MCP transport close failed for '%s'", self._name, exc_info=True)
            self._transport_context = None

    async def list_tools(self) -> list[Any]:
        """Return the server's tool definitions (mcp.types.Tool)."""
        await self.connect()
        result = await self._session.list_tools()
        return list(result.tools)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Call a tool with retry on transient errors; returns the raw CallToolResult.

        Raises:
            MCPToolError: Tool returned isError=True after all retries.
            MCPConnectionError: Server could not be reached.
        """
        await self.connect()
        last_error = ""
        for attempt in range(self._max_retries + 1):
            result = await self._session.call_tool(name, arguments or {})
            if not result.isError:
                return result

            last_error = "\n".join(extract_texts(result)) or "unknown error"
            if attempt < self._max_retries and self._is_retryable(last_error):
                delay = self._base_delay * (2 ** attempt)
                logger.warning(
                    "MCP tool '%s' on '%s' returned retryable error (attempt %d/%d), "
                    "retrying in %.1fs: %s",
                    name, self._name, attempt + 1, self._max_retries + 1, delay, last_error[:200],
                )
                await asyncio.sleep(delay)
                continue
            break

        raise MCPToolError(tool_name=name, error_text=last_error)


@dataclass
class MCPServerTools:
    """Tools exposed by one connected server."""

    server_id: str
    server_name: str
    tools: list[Any] = field(default_factory=list)


class MCPClientsManager:
    """One MCPClient per enabled server row, reused across turns.

    ``sync(db)`` reconciles the client set with the table (new rows get a
    client, removed or disabled rows are disconnected). ``list_all_tools``
    connects lazily; a server that fails is logged and skipped.
    """

    def __init__(self, client_factory: Callable[[str, dict], MCPClient] = MCPClient.from_config) -> None:
        self._client_factory = client_factory
        self._clients: dict[str, MCPClient] = {}
        self._configs: dict[str, str] = {}
        self._names: dict[str, str] = {}

    def sync(self, db: Session) -> None:
        rows = db.query(McpServer).filter(McpServer.enabled.is_(True)).all()
        seen = set()
        for row in rows:
            seen.add(row.id)
            if self._configs.get(row.id) == row.config_json and row.id in self._clients:
                self._names[row.id] = row.name
                continue
            try:
                config = json.loads(row.config_json)
                client = self._client_factory(row.name, config)
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                logger.warning("Skipping MCP server '%s': invalid config (%s)", row.name, e)
                continue
            stale = self._clients.pop(row.id, None)
            if stale is not None:
                asyncio.ensure_future(stale.disconnect())
            self._clients[row.id] = client
            self._configs[row.id] = row.config_json
            self._names[row.id] = row.name

        for server_id in list(self._clients):
            if server_id not in seen:
                asyncio.ensure_future(self._clients.pop(server_id).disconnect())
                self._configs.pop(server_id, None)
                self._names.pop(server_id, None)

    def get_client(self, server_id: str) -> MCPClient | None:
        return self._clients.get(server_id)

    async def list_all_tools(self) -> list[MCPServerTools]:
        async def _one(server_id: str, client: MCPClient) -> MCPServerTools | None:
            try:
                tools = await client.list_tools()
            except Exception as e:
                logger.warning("MCP server '%s' unavailable: %s", client.name, e)
                return None
            return MCPServerTools(server_id=server_id, server_name=self._names.get(server_id, client.name), tools=tools)

        results = await asyncio.gather(*(_one(sid, c) for sid, c in self._clients.items()))
        return [r for r in results if r is not None]

    async def close(self) -> None:
        for client in self._clients.values():
            await client.disconnect()
        self._clients.clear()
        self._configs.clear()
        self._names.clear()


_manager: MCPClientsManager | None = None


def get_mcp_manager() -> MCPClientsManager:
    """Process-wide manager instance."""
    global _manager
    if _manager is None:
        _manager = MCPClientsManager()
    return _manager
