"""Workflow tools: one tool per mentioned workflow.

A workflow's ``steps_json`` is an ordered list of steps:

    {"type": "tool", "tool": "web_search", "input": {"query": "{topic}"}, "output": "results"}
    {"type": "template", "template": "Found: {results}", "output": "summary"}

Placeholders are filled from the tool arguments and earlier step outputs.
Progress is reported as ``data-workflow`` stream events.
"""

import json
import logging
import string
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
    split_result,
)
from chatbridge.services.agent_service import AgentService, WorkflowRecord

logger = logging.getLogger(__name__)

_FORMATTER = string.Formatter()


class _Variables(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, default=str)


def render(value: Any, variables: dict[str, Any]) -> Any:
    """Fill ``{name}`` placeholders recursively.

    A string that is exactly one placeholder takes the raw variable value,
    so structured step outputs pass through unchanged.
    """
    if isinstance(value, dict):
        return {k: render(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, variables) for v in value]
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if stripped.startswith("{") and stripped.endswith("}") and stripped[1:-1] in variables:
        return variables[stripped[1:-1]]
    mapping = _Variables({k: _as_text(v) for k, v in variables.items()})
    try:
        return _FORMATTER.vformat(value, (), mapping)
    except (ValueError, IndexError, AttributeError, KeyError):
        return value


def _handler(workflow: WorkflowRecord):
    async def _run(args: dict[str, Any], runtime: ToolRuntime) -> dict[str, Any]:
        variables: dict[str, Any] = dict(args)
        base = {"toolCallId": runtime.tool_call_id, "workflowId": workflow.id, "workflowName": workflow.name}
        await runtime.emit_event("data-workflow", {**base, "status": "running", "totalSteps": len(workflow.steps)})

        result: Any = None
        for index, step in enumerate(workflow.steps):
            runtime.signal.raise_if_cancelled()
            step_name = step.get("name") or step.get("tool") or step.get("type") or f"step{index}"
            await runtime.emit_event("data-workflow", {**base, "status": "running", "step": index, "stepName": step_name})

            if step.get("type") == "tool":
                tool = runtime.tools.get(str(step.get("tool")))
                if tool is None or tool.handler is None:
                    error = f"Step '{step_name}' references unavailable tool '{step.get('tool')}'"
                    await runtime.emit_event("data-workflow", {**base, "status": "fail", "step": index, "error": error})
                    return _err(error)
                output, error = split_result(await tool.handler(render(step.get("input") or {}, variables), runtime))
                if error is not None:
                    await runtime.emit_event("data-workflow", {**base, "status": "fail", "step": index, "error": error})
                    return _err(f"Step '{step_name}' failed: {error}")
                result = output
            elif step.get("type") == "template":
                result = render(str(step.get("template") or ""), variables)
            else:
                logger.warning("Workflow %s has unknown step type %r", workflow.id, step.get("type"))
                continue
            variables[step.get("output") or f"step{index}"] = result

        await runtime.emit_event("data-workflow", {**base, "status": "success"})
        return _ok({"result": result})

    return _run


@fail_open("workflow")
async def load_workflow_tools(context: ToolContext) -> dict[str, ToolDescriptor]:
    """One tool per workflow mention visible to the user."""
    ids = [m["workflowId"] for m in context.mentions_of("workflow") if m.get("workflowId")]
    if not ids:
        return {}
    tools: dict[str, ToolDescriptor] = {}
    for workflow in AgentService(context.db).get_workflows(ids, context.user_id):
        name = sanitize_tool_name(workflow.name)
        tools[name] = ToolDescriptor(
            name=name,
            description=workflow.description or f"Run the '{workflow.name}' workflow",
            input_schema=workflow.input_schema,
            origin=ToolOrigin(kind="workflow", workflow_id=workflow.id, origin_tool_name=workflow.name),
            handler=_handler(workflow),
        )
    return tools
