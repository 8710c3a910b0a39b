"""System prompt fragments for a chat turn.

The turn engine merges up to three fragments: the user/agent prompt, the
plugin-server customization prompt and, for models without tool support,
a caveat telling the model it cannot call tools.

Example:
    prompt = merge_system_prompt(
        build_user_system_prompt(user, preferences, agent),
        build_mcp_customizations_prompt(customizations),
    )
"""

from datetime import datetime
from typing import Any

from chatbridge.services.agent_service import AgentRecord
from chatbridge.services.mcp_customization_service import ServerCustomization

TOOL_CALL_UNSUPPORTED_MODEL_PROMPT = """
### Tool Call Limitation
- You are using a model that does not support tool calls.
- When users request tool usage, simply explain that the current model cannot use tools and that they can switch to a model that supports tool calling to use tools.
""".strip()


def build_user_system_prompt(
    user: Any | None,
    preferences: dict | None = None,
    agent: AgentRecord | None = None,
) -> str:
    """Build the identity, user context and agent sections.

    Args:
        user: User row (name, email) or None.
        preferences: displayName, profession, responseStyleExample, botName.
        agent: Bound agent, whose role and system prompt are appended.

    Returns:
        Prompt text; never empty (the identity line is always present).
    """
    preferences = preferences or {}
    assistant_name = preferences.get("botName") or "chatbridge"

    lines = [f"You are {assistant_name}, an intelligent AI assistant that leverages tools to help users."]
    if agent is not None:
        lines.append(f"You are acting as the agent '{agent.name}'.")

    lines.append("")
    lines.append("<user_information>")
    lines.append(f"- Current time: {datetime.now().strftime('%A, %B %d, %Y at %I:%M:%S %p')}")
    display_name = preferences.get("displayName") or (getattr(user, "name", None) if user else None)
    if display_name:
        lines.append(f"- User name: {display_name}")
    if user is not None and getattr(user, "email", None):
        lines.append(f"- User email: {user.email}")
    if preferences.get("profession"):
        lines.append(f"- Profession: {preferences['profession']}")
    lines.append("</user_information>")

    if preferences.get("responseStyleExample"):
        lines.append("")
        lines.append("<response_style>")
        lines.append("Match the tone and format of this example when answering:")
        lines.append(str(preferences["responseStyleExample"]))
        lines.append("</response_style>")

    if agent is not None:
        instructions = agent.instructions
        if instructions.role:
            lines.append("")
            lines.append(f"## Role\n{instructions.role}")
        if instructions.system_prompt:
            lines.append("")
            lines.append(f"## Instructions\n{instructions.system_prompt}")

    return "\n".join(lines).strip()


def build_mcp_customizations_prompt(customizations: dict[str, ServerCustomization]) -> str:
    """Render per-server and per-tool prompts; empty string when there are none."""
    sections = []
    for customization in customizations.values():
        if not customization.prompt and not customization.tools:
            continue
        lines = [f"<{customization.server_name}>"]
        if customization.prompt:
            lines.append(f"<server_instructions>\n{customization.prompt}\n</server_instructions>")
        if customization.tools:
            lines.append("<tool_instructions>")
            for tool_name, prompt in customization.tools.items():
                lines.append(f"- {tool_name}: {prompt}")
            lines.append("</tool_instructions>")
        lines.append(f"</{customization.server_name}>")
        sections.append("\n".join(lines))

    if not sections:
        return ""
    header = "### Tool Usage Guidelines\nFollow these instructions when calling tools from the servers below."
    return header + "\n\n" + "\n\n".join(sections)


def filter_mcp_customizations(
    mcp_tools: dict[str, Any],
    customizations: dict[str, ServerCustomization],
) -> dict[str, ServerCustomization]:
    """Keep only servers and tools that are actually loaded for this turn."""
    loaded: dict[str, set[str]] = {}
    for tool in mcp_tools.values():
        origin = tool.origin
        if origin.server_id:
            loaded.setdefault(origin.server_id, set()).add(origin.origin_tool_name)

    result = {}
    for server_id, customization in customizations.items():
        if server_id not in loaded:
            continue
        tools = {name: p for name, p in customization.tools.items() if name in loaded[server_id]}
        if customization.prompt or tools:
            result[server_id] = ServerCustomization(
                server_id, customization.server_name, customization.prompt, tools,
            )
    return result


def merge_system_prompt(*fragments: str | None) -> str:
    """Join non-blank fragments with a blank line."""
    return "\n\n".join(f.strip() for f in fragments if f and f.strip())
