"""Shared internals for turn tools.

Contains the descriptor and origin types, the per-turn loader context and
execution runtime, response helpers (_ok/_err) and the fail-open loader
wrapper. All tool source submodules import from here.
"""

import functools
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.orm import Session

from chatbridge.orchestrator.cancellation import CancellationSignal, TurnCredentials

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
MAX_TOOL_NAME_LENGTH = 64


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolOrigin:
    """Where a tool comes from.

    Attributes:
        kind: 'mcp', 'workflow' or 'builtin'.
        server_id: Plugin server row id (mcp only).
        server_name: Plugin server display name (mcp only).
        origin_tool_name: Tool name as the source knows it.
        workflow_id: Workflow row id (workflow only).
        toolkit: Built-in toolkit name (builtin only).
    """

    kind: str
    server_id: str | None = None
    server_name: str | None = None
    origin_tool_name: str | None = None
    workflow_id: str | None = None
    toolkit: str | None = None


ToolHandler = Callable[[dict[str, Any], "ToolRuntime"], Awaitable[dict[str, Any]]]


@dataclass
class ToolDescriptor:
    """One tool offered to the model for this turn.

    ``handler`` is None when execution is left to the client (manual mode).
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    origin: ToolOrigin
    handler: ToolHandler | None = None


def sanitize_tool_name(raw: str) -> str:
    """Coerce to the character set and length model providers accept."""
    name = _INVALID_NAME_CHARS.sub("_", raw).strip("_") or "tool"
    return name[:MAX_TOOL_NAME_LENGTH]


def exclude_tool_execution(tools: dict[str, ToolDescriptor]) -> dict[str, ToolDescriptor]:
    """Return copies of tools with their handlers removed."""
    return {name: replace(tool, handler=None) for name, tool in tools.items()}


# ---------------------------------------------------------------------------
# Loader context and execution runtime
# ---------------------------------------------------------------------------


@dataclass
class ToolContext:
    """Input shared by the three tool loaders.

    Attributes:
        tool_call_allowed: Eligibility flag; every loader returns {} when False.
        mentions: Mentions for this turn (agent mentions already merged).
        allowed_mcp_servers: {server_id: {"tools": [names]}} or None for all.
        allowed_app_default_toolkit: Built-in toolkit names or None for all.
        mcp_manager: Process-wide MCP clients manager.
        http_transport: Optional httpx transport for built-in web tools (tests).
    """

    user_id: str
    db: Session
    tool_call_allowed: bool
    mentions: list[dict] = field(default_factory=list)
    allowed_mcp_servers: dict[str, Any] | None = None
    allowed_app_default_toolkit: list[str] | None = None
    mcp_manager: Any = None
    http_transport: httpx.AsyncBaseTransport | None = None

    def mentions_of(self, *types: str) -> list[dict]:
        return [m for m in self.mentions if isinstance(m, dict) and m.get("type") in types]


@dataclass
class ToolRuntime:
    """Per-call execution state handed to a tool handler."""

    signal: CancellationSignal
    credentials: TurnCredentials
    tool_call_id: str
    tools: dict[str, ToolDescriptor] = field(default_factory=dict)
    emit: Callable[[dict[str, Any]], Awaitable[None]] | None = None

    async def emit_event(self, event_type: str, data: dict[str, Any]) -> None:
        if self.emit is not None:
            await self.emit({"event": event_type, "data": data})


# ---------------------------------------------------------------------------
# Response Helpers
# ---------------------------------------------------------------------------


def _ok(data: Any) -> dict[str, Any]:
    """Build a successful tool response."""
    return {"isError": False, "output": data}


def _err(message: str) -> dict[str, Any]:
    """Build an error tool response."""
    return {"isError": True, "error": message}


def split_result(result: Any) -> tuple[Any, str | None]:
    """Return (output, error_text) from a handler response."""
    if isinstance(result, dict) and "isError" in result:
        if result["isError"]:
            return None, str(result.get("error") or "Tool failed")
        return result.get("output"), None
    return result, None


# ---------------------------------------------------------------------------
# Loader wrapper
# ---------------------------------------------------------------------------


def fail_open(source: str):
    """Gate a loader on eligibility and turn any exception into an empty map."""

    def decorator(loader: Callable[[ToolContext], Awaitable[dict[str, ToolDescriptor]]]):
        @functools.wraps(loader)
        async def _wrapped(context: ToolContext) -> dict[str, ToolDescriptor]:
            if not context.tool_call_allowed:
                return {}
            try:
                return await loader(context)
            except Exception as e:
                logger.warning("Tool source '%s' failed, continuing without it: %s", source, e, exc_info=True)
                return {}

        return _wrapped

    return decorator
