"""Tests for the turn tool registry and its three sources."""

import json

import httpx
import pytest
from mcp.types import CallToolResult, TextContent, Tool

from chatbridge.db.models import McpServer, Visibility, Workflow
from chatbridge.orchestrator.cancellation import CancellationSignal, TurnCredentials
from chatbridge.orchestrator.tools import (
    ToolContext,
    ToolRuntime,
    exclude_tool_execution,
    load_builtin_tools,
    load_mcp_tools,
    load_tool_sets,
    load_workflow_tools,
    split_result,
)
from chatbridge.orchestrator.tools.core import fail_open, sanitize_tool_name
from chatbridge.orchestrator.tools.mcp import _is_allowed
from chatbridge.orchestrator.tools.workflow import render
from chatbridge.services.mcp_client import MCPClientsManager, MCPToolError
from tests.helpers import FakeUpstream


def make_runtime(tools=None, credentials=None, events=None):
    creds = TurnCredentials()
    for name, value in (credentials or {}).items():
        creds.set(name, value)

    async def emit(event):
        if events is not None:
            events.append(event)

    return ToolRuntime(
        signal=CancellationSignal(),
        credentials=creds,
        tool_call_id="call-1",
        tools=tools or {},
        emit=emit,
    )


class FakeMCPClient:
    def __init__(self, name, tools, results=None):
        self.name = name
        self._tools = tools
        self._results = results or {}
        self.calls = []

    async def list_tools(self):
        return self._tools

    async def call_tool(self, name, arguments=None):
        self.calls.append((name, arguments))
        result = self._results.get(name)
        if isinstance(result, Exception):
            raise result
        return result

    async def disconnect(self):
        pass


def _mcp_manager(db_session, client):
    db_session.add(McpServer(id="srv-1", name="files", config_json=json.dumps({"command": "files-mcp"})))
    db_session.commit()
    return MCPClientsManager(client_factory=lambda name, config: client)


@pytest.fixture
def files_client():
    return FakeMCPClient(
        "files",
        [
            Tool(name="read", description="Read a file", inputSchema={"type": "object", "properties": {}}),
            Tool(name="write", description="Write a file", inputSchema={"type": "object", "properties": {}}),
        ],
        results={
            "read": CallToolResult(content=[TextContent(type="text", text='{"size": 3}')]),
            "write": MCPToolError("write", "disk full"),
        },
    )


class TestCore:
    """Tests for descriptor helpers."""

    def test_sanitize_tool_name(self):
        assert sanitize_tool_name("My Server/read file!") == "My_Server_read_file"
        assert sanitize_tool_name("***") == "tool"
        assert len(sanitize_tool_name("x" * 100)) == 64

    def test_split_result(self):
        assert split_result({"isError": False, "output": 1}) == (1, None)
        assert split_result({"isError": True, "error": "boom"}) == (None, "boom")
        assert split_result("raw") == ("raw", None)

    @pytest.mark.asyncio
    async def test_exclude_tool_execution_strips_handlers(self, db_session):
        tools = await load_builtin_tools(ToolContext(user_id="u1", db=db_session, tool_call_allowed=True))
        stripped = exclude_tool_execution(tools)
        assert set(stripped) == set(tools)
        assert all(t.handler is None for t in stripped.values())
        assert tools["echo"].handler is not None

    @pytest.mark.asyncio
    async def test_fail_open_turns_errors_into_empty_map(self, db_session):
        @fail_open("broken")
        async def loader(context):
            raise RuntimeError("nope")

        assert await loader(ToolContext(user_id="u1", db=db_session, tool_call_allowed=True)) == {}

    @pytest.mark.asyncio
    async def test_ineligible_turn_loads_nothing(self, db_session):
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=False)
        sets = await load_tool_sets(context)
        assert sets.merged() == {}
        assert sets.counts() == {"mcp": 0, "workflow": 0, "builtin": 0}


class TestBuiltinTools:
    """Tests for built-in toolkits."""

    @pytest.mark.asyncio
    async def test_all_toolkits_by_default(self, db_session):
        tools = await load_builtin_tools(ToolContext(user_id="u1", db=db_session, tool_call_allowed=True))
        assert {"web_search", "web_content", "http_fetch", "python_execute", "echo"} <= set(tools)
        assert tools["echo"].origin.toolkit == "utility"

    @pytest.mark.asyncio
    async def test_toolkit_allow_list(self, db_session):
        context = ToolContext(
            user_id="u1", db=db_session, tool_call_allowed=True, allowed_app_default_toolkit=["utility"],
        )
        assert set(await load_builtin_tools(context)) == {"echo"}

    @pytest.mark.asyncio
    async def test_default_tool_mention_wins(self, db_session):
        context = ToolContext(
            user_id="u1",
            db=db_session,
            tool_call_allowed=True,
            mentions=[{"type": "defaultTool", "name": "http_fetch"}],
            allowed_app_default_toolkit=["utility"],
        )
        assert set(await load_builtin_tools(context)) == {"http_fetch"}

    @pytest.mark.asyncio
    async def test_echo(self, db_session):
        tools = await load_builtin_tools(ToolContext(user_id="u1", db=db_session, tool_call_allowed=True))
        result = await tools["echo"].handler({"message": "hi", "uppercase": True}, make_runtime())
        assert result == {"isError": False, "output": {"echoed": "HI", "length": 2}}
        assert (await tools["echo"].handler({}, make_runtime()))["isError"] is True

    @pytest.mark.asyncio
    async def test_web_search_uses_turn_credential(self, db_session):
        exa = FakeUpstream()
        exa.add("POST", "/search", json={"results": [{"title": "t"}]})
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=True, http_transport=exa.transport)
        tools = await load_builtin_tools(context)

        result = await tools["web_search"].handler(
            {"query": "weather", "numResults": 50}, make_runtime(credentials={"exa": "exa-key"}),
        )

        assert result["output"] == {"results": [{"title": "t"}]}
        sent = exa.calls("POST", "/search")[0]
        assert sent.headers["x-api-key"] == "exa-key"
        assert sent.body["numResults"] == 20

    @pytest.mark.asyncio
    async def test_web_search_without_key(self, db_session):
        tools = await load_builtin_tools(ToolContext(user_id="u1", db=db_session, tool_call_allowed=True))
        result = await tools["web_search"].handler({"query": "x"}, make_runtime())
        assert result["isError"] is True
        assert "Exa" in result["error"]

    @pytest.mark.asyncio
    async def test_http_fetch(self, db_session):
        site = FakeUpstream()
        site.add("GET", "/page", content=b"hello", headers={"content-type": "text/plain"})
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=True, http_transport=site.transport)
        tools = await load_builtin_tools(context)
        result = await tools["http_fetch"].handler({"url": "https://example.test/page"}, make_runtime())
        assert result["output"]["status"] == 200
        assert result["output"]["body"] == "hello"
        assert result["output"]["truncated"] is False

    @pytest.mark.asyncio
    async def test_http_fetch_rejects_relative_url(self, db_session):
        tools = await load_builtin_tools(ToolContext(user_id="u1", db=db_session, tool_call_allowed=True))
        assert (await tools["http_fetch"].handler({"url": "/etc/passwd"}, make_runtime()))["isError"] is True


class TestMcpTools:
    """Tests for plugin-server tools."""

    @pytest.mark.parametrize(
        ("mentions", "allowed", "tool", "expected"),
        [
            ([], None, "read", True),
            ([], {"srv-1": {"tools": ["read"]}}, "read", True),
            ([], {"srv-1": {"tools": ["read"]}}, "write", False),
            ([], {"srv-1": {}}, "write", True),
            ([], {"other": {}}, "read", False),
            ([{"type": "mcpServer", "serverId": "srv-1"}], {"other": {}}, "write", True),
            ([{"type": "mcpTool", "serverId": "srv-1", "name": "read"}], None, "write", False),
            ([{"type": "mcpTool", "serverId": "srv-1", "name": "read"}], None, "read", True),
        ],
    )
    def test_is_allowed(self, mentions, allowed, tool, expected):
        assert _is_allowed("srv-1", tool, mentions, allowed) is expected

    @pytest.mark.asyncio
    async def test_tools_are_prefixed_with_server_name(self, db_session, files_client):
        manager = _mcp_manager(db_session, files_client)
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=True, mcp_manager=manager)
        tools = await load_mcp_tools(context)
        assert set(tools) == {"files_read", "files_write"}
        assert tools["files_read"].origin.server_id == "srv-1"
        assert tools["files_read"].origin.origin_tool_name == "read"

    @pytest.mark.asyncio
    async def test_call_parses_json_text(self, db_session, files_client):
        manager = _mcp_manager(db_session, files_client)
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=True, mcp_manager=manager)
        tools = await load_mcp_tools(context)
        result = await tools["files_read"].handler({"path": "a"}, make_runtime())
        assert result == {"isError": False, "output": {"size": 3}}
        assert files_client.calls == [("read", {"path": "a"})]

    @pytest.mark.asyncio
    async def test_tool_error_becomes_error_result(self, db_session, files_client):
        manager = _mcp_manager(db_session, files_client)
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=True, mcp_manager=manager)
        tools = await load_mcp_tools(context)
        assert await tools["files_write"].handler({}, make_runtime()) == {"isError": True, "error": "disk full"}

    @pytest.mark.asyncio
    async def test_disabled_server_is_skipped(self, db_session, files_client):
        manager = _mcp_manager(db_session, files_client)
        db_session.get(McpServer, "srv-1").enabled = False
        db_session.commit()
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=True, mcp_manager=manager)
        assert await load_mcp_tools(context) == {}


class TestWorkflowTools:
    """Tests for workflow rendering and execution."""

    def test_render_placeholders(self):
        assert render("Hello {name}", {"name": "Ana"}) == "Hello Ana"
        assert render("{data}", {"data": {"a": 1}}) == {"a": 1}
        assert render({"q": ["{x}"]}, {"x": 5}) == {"q": [5]}
        assert render("keep {missing}", {}) == "keep {missing}"

    @pytest.fixture
    def workflow(self, db_session):
        row = Workflow(
            user_id="u1",
            name="Shout Report",
            description="Echo then summarize",
            input_schema_json=json.dumps({"type": "object", "properties": {"topic": {"type": "string"}}}),
            steps_json=json.dumps([
                {"type": "tool", "tool": "echo", "input": {"message": "{topic}", "uppercase": True}, "output": "shout"},
                {"type": "template", "template": "Report: {shout}", "output": "report"},
            ]),
        )
        db_session.add(row)
        db_session.commit()
        return row

    @pytest.mark.asyncio
    async def test_only_mentioned_workflows_load(self, db_session, workflow):
        context = ToolContext(user_id="u1", db=db_session, tool_call_allowed=True)
        assert await load_workflow_tools(context) == {}
        context.mentions = [{"type": "workflow", "workflowId": workflow.id}]
        tools = await load_workflow_tools(context)
        assert list(tools) == ["Shout_Report"]
        assert tools["Shout_Report"].input_schema["properties"]["topic"] == {"type": "string"}

    @pytest.mark.asyncio
    async def test_private_workflow_of_other_user_hidden(self, db_session, workflow):
        context = ToolContext(
            user_id="u2", db=db_session, tool_call_allowed=True,
            mentions=[{"type": "workflow", "workflowId": workflow.id}],
        )
        assert await load_workflow_tools(context) == {}
        workflow.visibility = Visibility.public.value
        db_session.commit()
        assert list(await load_workflow_tools(context)) == ["Shout_Report"]

    @pytest.mark.asyncio
    async def test_run_chains_steps_and_emits_progress(self, db_session, workflow):
        context = ToolContext(
            user_id="u1", db=db_session, tool_call_allowed=True,
            mentions=[{"type": "workflow", "workflowId": workflow.id}],
        )
        tools = {**await load_workflow_tools(context), **await load_builtin_tools(context)}
        events = []
        result = await tools["Shout_Report"].handler({"topic": "sales"}, make_runtime(tools=tools, events=events))

        report = result["output"]["result"]
        assert report.startswith("Report: ")
        assert json.loads(report[len("Report: "):]) == {"echoed": "SALES", "length": 5}
        statuses = [e["data"]["status"] for e in events]
        assert statuses[0] == "running"
        assert statuses[-1] == "success"
        assert all(e["event"] == "data-workflow" for e in events)

    @pytest.mark.asyncio
    async def test_missing_step_tool_fails(self, db_session, workflow):
        context = ToolContext(
            user_id="u1", db=db_session, tool_call_allowed=True,
            mentions=[{"type": "workflow", "workflowId": workflow.id}],
        )
        tools = await load_workflow_tools(context)
        events = []
        result = await tools["Shout_Report"].handler({"topic": "x"}, make_runtime(tools=tools, events=events))
        assert result["isError"] is True
        assert "unavailable tool 'echo'" in result["error"]
        assert events[-1]["data"]["status"] == "fail"
