"""Built-in toolkits: web search, HTTP fetch, code execution and echo.

Toolkits and the tools they contribute:

    webSearch  web_search, web_content   (Exa; key from the turn's credential scope)
    http       http_fetch
    code       python_execute            (subprocess with a timeout)
    utility    echo
"""

import asyncio
import logging
import os
import sys
from typing import Any

import httpx

from chatbridge.orchestrator.tools.core import (
    ToolContext,
    ToolDescriptor,
    ToolOrigin,
    ToolRuntime,
    _err,
    _ok,
    fail_open,
)

logger = logging.getLogger(__name__)

EXA_BASE_URL = "https://api.exa.ai"
EXA_CREDENTIAL = "exa"
MAX_FETCH_CHARS = 20_000
MAX_CONTENT_CHARS = 3_000
MAX_OUTPUT_CHARS = 10_000


def get_code_timeout() -> float:
    raw = os.environ.get("CHATBRIDGE_CODE_TIMEOUT_SECONDS", "10")
    try:
        value = float(raw)
    except ValueError:
        return 10.0
    return value if value > 0 else 10.0


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _exa_handlers(transport: httpx.AsyncBaseTransport | None):
    async def _exa_post(path: str, body: dict, runtime: ToolRuntime) -> dict[str, Any]:
        api_key = runtime.credentials.get(EXA_CREDENTIAL)
        if not api_key:
            return _err("Web search is not configured: no Exa API key is available")
        async with httpx.AsyncClient(transport=transport, timeout=30.0) as client:
            response = await runtime.signal.guard(
                client.post(f"{EXA_BASE_URL}{path}", headers={"x-api-key": api_key}, json=body)
            )
        if not response.is_success:
            logger.warning("Exa %s returned %d", path, response.status_code)
            return _err(f"Exa request failed with status {response.status_code}")
        return _ok(response.json())

    async def web_search(args: dict[str, Any], runtime: ToolRuntime) -> dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if not query:
            return _err("query is required")
        body = {
            "query": query,
            "type": args.get("type") or "auto",
            "numResults": min(int(args.get("numResults") or 5), 20),
            "contents": {"text": {"maxCharacters": MAX_CONTENT_CHARS}},
        }
        return await _exa_post("/search", body, runtime)

    async def web_content(args: dict[str, Any], runtime: ToolRuntime) -> dict[str, Any]:
        urls = [u for u in args.get("urls") or [] if isinstance(u, str) and u]
        if not urls:
            return _err("urls is required")
        body = {"urls": urls, "text": {"maxCharacters": int(args.get("maxCharacters") or MAX_CONTENT_CHARS)}}
        return await _exa_post("/contents", body, runtime)

    return web_search, web_content


def _http_fetch_handler(transport: httpx.AsyncBaseTransport | None):
    async def http_fetch(args: dict[str, Any], runtime: ToolRuntime) -> dict[str, Any]:
        url = str(args.get("url") or "")
        if not url.startswith(("http://", "https://")):
            return _err("url must be an absolute http(s) URL")
        method = str(args.get("method") or "GET").upper()
        async with httpx.AsyncClient(transport=transport, timeout=30.0, follow_redirects=True) as client:
            try:
                response = await runtime.signal.guard(client.request(
                    method, url, headers=args.get("headers") or None, content=args.get("body"),
                ))
            except httpx.HTTPError as e:
                return _err(f"Request failed: {e}")
        text = response.text
        return _ok({
            "status": response.status_code,
            "contentType": response.headers.get("content-type"),
            "body": text[:MAX_FETCH_CHARS],
            "truncated": len(text) > MAX_FETCH_CHARS,
        })

    return http_fetch


async def python_execute(args: dict[str, Any], runtime: ToolRuntime) -> dict[str, Any]:
    code = args.get("code")
    if not isinstance(code, str) or not code.strip():
        return _err("code is required")
    timeout = get_code_timeout()
    process = await asyncio.create_subprocess_exec(
        sys.executable, "-I", "-c", code,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await runtime.signal.guard(asyncio.wait_for(process.communicate(), timeout))
    except asyncio.TimeoutError:
        return _err(f"Execution timed out after {timeout:g}s")
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
    return _ok({
        "exitCode": process.returncode,
        "stdout": stdout.decode(errors="replace")[:MAX_OUTPUT_CHARS],
        "stderr": stderr.decode(errors="replace")[:MAX_OUTPUT_CHARS],
    })


async def echo(args: dict[str, Any], runtime: ToolRuntime) -> dict[str, Any]:
    message = str(args.get("message") or "")
    if not message:
        return _err("message is required")
    value = message.upper() if args.get("uppercase") else message
    return _ok({"echoed": value, "length": len(value)})


# ---------------------------------------------------------------------------
# Toolkit table
# ---------------------------------------------------------------------------


def build_toolkits(transport: httpx.AsyncBaseTransport | None = None) -> dict[str, list[ToolDescriptor]]:
    web_search, web_content = _exa_handlers(transport)

    def _tool(toolkit: str, name: str, description: str, schema: dict, handler) -> ToolDescriptor:
        return ToolDescriptor(
            name=name,
            description=description,
            input_schema={"type": "object", **schema},
            origin=ToolOrigin(kind="builtin", origin_tool_name=name, toolkit=toolkit),
            handler=handler,
        )

    return {
        "webSearch": [
            _tool("webSearch", "web_search", "Search the web and return the top results with page text.", {
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "numResults": {"type": "integer", "description": "Number of results (max 20)"},
                    "type": {"type": "string", "enum": ["auto", "keyword", "neural"]},
                },
                "required": ["query"],
            }, web_search),
            _tool("webSearch", "web_content", "Fetch the readable text of specific web pages.", {
                "properties": {
                    "urls": {"type": "array", "items": {"type": "string"}},
                    "maxCharacters": {"type": "integer"},
                },
                "required": ["urls"],
            }, web_content),
        ],
        "http": [
            _tool("http", "http_fetch", "Make an HTTP request and return status and body text.", {
                "properties": {
                    "url": {"type": "string"},
                    "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]},
                    "headers": {"type": "object", "additionalProperties": {"type": "string"}},
                    "body": {"type": "string"},
                },
                "required": ["url"],
            }, _http_fetch_handler(transport)),
        ],
        "code": [
            _tool("code", "python_execute", "Run a short Python script and return stdout and stderr.", {
                "properties": {"code": {"type": "string", "description": "Python source to execute"}},
                "required": ["code"],
            }, python_execute),
        ],
        "utility": [
            _tool("utility", "echo", "Echo back provided message. Useful for diagnostics and piping.", {
                "properties": {
                    "message": {"type": "string", "description": "Text to echo back"},
                    "uppercase": {"type": "boolean", "description": "Return uppercased text"},
                },
                "required": ["message"],
            }, echo),
        ],
    }


@fail_open("builtin")
async def load_builtin_tools(context: ToolContext) -> dict[str, ToolDescriptor]:
    """Built-in tools filtered by defaultTool mentions, else by the toolkit allow-list."""
    toolkits = build_toolkits(context.http_transport)
    mentioned = {m.get("name") for m in context.mentions_of("defaultTool") if m.get("name")}

    tools: dict[str, ToolDescriptor] = {}
    for toolkit, descriptors in toolkits.items():
        if not mentioned and context.allowed_app_default_toolkit is not None:
            if toolkit not in context.allowed_app_default_toolkit:
                continue
        for descriptor in descriptors:
            if mentioned and descriptor.name not in mentioned and toolkit not in mentioned:
                continue
            tools[descriptor.name] = descriptor
    return tools
