"""Turn tool registry - canonical entrypoint.

Three independent sources (plugin servers, workflows, built-ins) are
loaded concurrently; each is gated by the turn's eligibility flag and
fails open to an empty map.
"""

import asyncio
from dataclasses import dataclass, field

from chatbridge.orchestrator.tools.builtin import load_builtin_tools
from chatbridge.orchestrator.tools.core import (
    ToolContext,
    ToolDescriptor,
    ToolOrigin,
    ToolRuntime,
    exclude_tool_execution,
    split_result,
)
from chatbridge.orchestrator.tools.mcp import load_mcp_tools
from chatbridge.orchestrator.tools.workflow import load_workflow_tools


@dataclass
class ToolSets:
    mcp: dict[str, ToolDescriptor] = field(default_factory=dict)
    workflow: dict[str, ToolDescriptor] = field(default_factory=dict)
    builtin: dict[str, ToolDescriptor] = field(default_factory=dict)

    def merged(self) -> dict[str, ToolDescriptor]:
        return {**self.mcp, **self.workflow, **self.builtin}

    def counts(self) -> dict[str, int]:
        return {"mcp": len(self.mcp), "workflow": len(self.workflow), "builtin": len(self.builtin)}


async def load_tool_sets(context: ToolContext) -> ToolSets:
    """Run the three loaders concurrently and wait for all of them."""
    mcp, workflow, builtin = await asyncio.gather(
        load_mcp_tools(context),
        load_workflow_tools(context),
        load_builtin_tools(context),
    )
    return ToolSets(mcp=mcp, workflow=workflow, builtin=builtin)


__all__ = [
    "ToolContext",
    "ToolDescriptor",
    "ToolOrigin",
    "ToolRuntime",
    "ToolSets",
    "exclude_tool_execution",
    "load_builtin_tools",
    "load_mcp_tools",
    "load_tool_sets",
    "load_workflow_tools",
    "split_result",
]
