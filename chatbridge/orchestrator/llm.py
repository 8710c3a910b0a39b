"""Language-model adapters and the per-user model resolver.

Two adapters implement the ``InvokableModel`` protocol:

* ``AnthropicModel``: the ``anthropic`` SDK's streaming messages API.
* ``OpenAICompatibleModel``: chat completions over ``httpx`` with SSE
  streaming, used by every other provider in the catalog.

Both consume the provider-neutral message list built by
``to_model_messages`` and yield ``TextDelta``, ``ReasoningDelta``,
``ToolCallRequest`` and a final ``StepFinish`` per model step.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

import anthropic
import httpx

from chatbridge.errors import ModelError, TransientModelError, UpstreamConfigError
from chatbridge.orchestrator.cancellation import CancellationSignal
from chatbridge.orchestrator.models import ModelRef, ModelSpec, get_provider, resolve_spec
from chatbridge.services.user_key_service import ActiveKey, UserKeyService
from chatbridge.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504, 529}


# -- stream events ----------------------------------------------------------


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.input_tokens + self.output_tokens,
        }


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ToolCallRequest:
    id: str
    name: str
    input: dict


@dataclass
class StepFinish:
    finish_reason: str | None
    usage: Usage = field(default_factory=Usage)


@dataclass
class Completion:
    text: str
    usage: Usage = field(default_factory=Usage)


@dataclass
class ToolSpec:
    """Tool definition as sent to the model."""

    name: str
    description: str
    input_schema: dict


class InvokableModel(Protocol):
    spec: ModelSpec

    def stream(
        self,
        system: str | None,
        messages: list[dict],
        tools: list[ToolSpec],
        signal: CancellationSignal | None = None,
    ) -> AsyncIterator[Any]: ...

    async def complete(
        self, system: str | None, prompt: str, signal: CancellationSignal | None = None,
    ) -> Completion: ...


# -- message conversion -----------------------------------------------------

TERMINAL_TOOL_STATES = ("output-available", "output-error")


def to_model_messages(ui_messages: list[dict]) -> list[dict]:
    """Convert stored chat messages into provider-neutral model messages.

    Neutral messages are ``{"role": "user"|"assistant"|"tool", "content": [block]}``
    with blocks ``text``, ``file``, ``tool-call`` and ``tool-result``.
    Tool calls that never reached a terminal state are dropped.
    """
    result: list[dict] = []
    for message in ui_messages:
        role = message.get("role")
        parts = message.get("parts") or []
        if role == "user" or role == "system":
            blocks = []
            for part in parts:
                if part.get("type") == "text" and part.get("text"):
                    blocks.append({"type": "text", "text": part["text"]})
                elif part.get("type") == "file" and part.get("url"):
                    blocks.append({
                        "type": "file",
                        "url": part["url"],
                        "mediaType": part.get("mediaType") or "application/octet-stream",
                        "filename": part.get("filename"),
                    })
            if blocks:
                result.append({"role": "user", "content": blocks})
        elif role == "assistant":
            result.extend(_assistant_to_model_messages(parts))
    return result


def _assistant_to_model_messages(parts: list[dict]) -> list[dict]:
    out: list[dict] = []
    content: list[dict] = []
    results: list[dict] = []

    def flush() -> None:
        if content:
            out.append({"role": "assistant", "content": list(content)})
        if results:
            out.append({"role": "tool", "content": list(results)})
        content.clear()
        results.clear()

    for part in parts:
        kind = part.get("type")
        if kind == "text" and part.get("text"):
            if results:
                flush()
            content.append({"type": "text", "text": part["text"]})
        elif kind == "tool-call" and part.get("state") in TERMINAL_TOOL_STATES:
            content.append({
                "type": "tool-call",
                "id": part["toolCallId"],
                "name": part["toolName"],
                "input": part.get("input") or {},
            })
            is_error = part.get("state") == "output-error"
            results.append({
                "type": "tool-result",
                "id": part["toolCallId"],
                "name": part["toolName"],
                "output": part.get("errorText") if is_error else part.get("output"),
                "isError": is_error,
            })
    flush()
    return out


def _dumps(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _split_data_url(url: str) -> tuple[str, str] | None:
    if not url.startswith("data:") or "," not in url:
        return None
    meta, data = url[5:].split(",", 1)
    media_type = meta.split(";", 1)[0] or "application/octet-stream"
    return media_type, data


def _attachment_note(block: dict) -> str:
    name = block.get("filename") or "attachment"
    url = block["url"] if not block["url"].startswith("data:") else "inline data"
    return f"[Attachment: {name} ({block['mediaType']}) {url}]"


# -- OpenAI-compatible adapter ----------------------------------------------


def _openai_messages(system: str | None, messages: list[dict]) -> list[dict]:
    out: list[dict] = [{"role": "system", "content": system}] if system else []
    for message in messages:
        role = message["role"]
        blocks = message["content"]
        if role == "user":
            items = []
            for block in blocks:
                if block["type"] == "text":
                    items.append({"type": "text", "text": block["text"]})
                elif block["type"] == "file" and block["mediaType"].startswith("image/"):
                    items.append({"type": "image_url", "image_url": {"url": block["url"]}})
                elif block["type"] == "file":
                    items.append({"type": "text", "text": _attachment_note(block)})
            if all(item["type"] == "text" for item in items):
                out.append({"role": "user", "content": "\n".join(item["text"] for item in items)})
            else:
                out.append({"role": "user", "content": items})
        elif role == "assistant":
            text = "".join(b["text"] for b in blocks if b["type"] == "text")
            calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b["input"])},
                }
                for b in blocks if b["type"] == "tool-call"
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                entry["tool_calls"] = calls
            out.append(entry)
        elif role == "tool":
            for block in blocks:
                out.append({"role": "tool", "tool_call_id": block["id"], "content": _dumps(block["output"])})
    return out


def _openai_tools(tools: list[ToolSpec]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
        }
        for t in tools
    ]


def _openai_usage(raw: Any) -> Usage:
    if not isinstance(raw, dict):
        return Usage()
    return Usage(int(raw.get("prompt_tokens") or 0), int(raw.get("completion_tokens") or 0))


class OpenAICompatibleModel:
    """Chat completions over httpx for OpenAI-compatible endpoints.

    Args:
        spec: Catalog entry.
        api_key: Bearer key; None for keyless local endpoints.
        base_url: Endpoint root ending before ``/chat/completions``.
        transport: Optional httpx transport override.
    """

    def __init__(
        self,
        spec: ModelSpec,
        api_key: str | None,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.spec = spec
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        await response.aread()
        message = sanitize_error_message(
            f"{self.spec.provider} returned {response.status_code}: {response.text[:500]}"
        )
        if response.status_code in _TRANSIENT_STATUS:
            raise TransientModelError(message)
        raise ModelError(message)

    async def stream(
        self,
        system: str | None,
        messages: list[dict],
        tools: list[ToolSpec],
        signal: CancellationSignal | None = None,
    ) -> AsyncIterator[Any]:
        body: dict[str, Any] = {
            "model": self.spec.api_name,
            "messages": _openai_messages(system, messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            body["tools"] = _openai_tools(tools)
            body["tool_choice"] = "auto"

        calls: dict[int, dict] = {}
        finish_reason = None
        usage = Usage()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                async with client.stream(
                    "POST", f"{self._base_url}/chat/completions", headers=self._headers(), json=body,
                ) as response:
                    await self._raise_for_status(response)
                    async for line in response.aiter_lines():
                        if signal is not None:
                            signal.raise_if_cancelled()
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        payload = line[5:].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            chunk = json.loads(payload)
                        except json.JSONDecodeError:
                            continue
                        if chunk.get("usage"):
                            usage = _openai_usage(chunk["usage"])
                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}
                            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                            if reasoning:
                                yield ReasoningDelta(reasoning)
                            if delta.get("content"):
                                yield TextDelta(delta["content"])
                            for call in delta.get("tool_calls") or []:
                                slot = calls.setdefault(call.get("index", 0), {"id": None, "name": "", "arguments": ""})
                                if call.get("id"):
                                    slot["id"] = call["id"]
                                function = call.get("function") or {}
                                if function.get("name"):
                                    slot["name"] = function["name"]
                                if function.get("arguments"):
                                    slot["arguments"] += function["arguments"]
                            if choice.get("finish_reason"):
                                finish_reason = choice["finish_reason"]
        except httpx.TransportError as e:
            raise TransientModelError(f"{self.spec.provider} connection failed: {e}") from e

        for index in sorted(calls):
            slot = calls[index]
            try:
                arguments = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError:
                logger.warning("Unparseable tool arguments for %s from %s", slot["name"], self.spec.ref)
                arguments = {}
            yield ToolCallRequest(id=slot["id"] or f"call_{index}", name=slot["name"], input=arguments)
        yield StepFinish(finish_reason, usage)

    async def complete(
        self, system: str | None, prompt: str, signal: CancellationSignal | None = None,
    ) -> Completion:
        body = {
            "model": self.spec.api_name,
            "messages": _openai_messages(system, [{"role": "user", "content": [{"type": "text", "text": prompt}]}]),
        }

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                return await client.post(f"{self._base_url}/chat/completions", headers=self._headers(), json=body)

        try:
            response = await (signal.guard(_call()) if signal is not None else _call())
        except httpx.TransportError as e:
            raise TransientModelError(f"{self.spec.provider} connection failed: {e}") from e
        await self._raise_for_status(response)
        data = response.json()
        choices = data.get("choices") or []
        text = ((choices[0].get("message") or {}).get("content") if choices else None) or ""
        return Completion(text=text, usage=_openai_usage(data.get("usage")))


# -- Anthropic adapter ------------------------------------------------------


def _anthropic_messages(messages: list[dict]) -> list[dict]:
    out: list[dict] = []
    for message in messages:
        role = message["role"]
        blocks: list[dict] = []
        for block in message["content"]:
            if block["type"] == "text":
                blocks.append({"type": "text", "text": block["text"]})
            elif block["type"] == "file" and block["mediaType"].startswith("image/"):
                inline = _split_data_url(block["url"])
                if inline is not None:
                    blocks.append({"type": "image", "source": {"type": "base64", "media_type": inline[0], "data": inline[1]}})
                else:
                    blocks.append({"type": "image", "source": {"type": "url", "url": block["url"]}})
            elif block["type"] == "file":
                blocks.append({"type": "text", "text": _attachment_note(block)})
            elif block["type"] == "tool-call":
                blocks.append({"type": "tool_use", "id": block["id"], "name": block["name"], "input": block["input"]})
            elif block["type"] == "tool-result":
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": block["id"],
                    "content": _dumps(block["output"]),
                    "is_error": bool(block.get("isError")),
                })
        target_role = "assistant" if role == "assistant" else "user"
        if out and out[-1]["role"] == target_role:
            out[-1]["content"].extend(blocks)
        elif blocks:
            out.append({"role": target_role, "content": blocks})
    return out


def _anthropic_error(e: Exception) -> ModelError:
    message = sanitize_error_message(f"anthropic: {e}")
    if isinstance(e, (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError)):
        return TransientModelError(message)
    if isinstance(e, anthropic.APIStatusError) and e.status_code in _TRANSIENT_STATUS:
        return TransientModelError(message)
    return ModelError(message)


class AnthropicModel:
    """Anthropic messages API through the official SDK.

    Args:
        spec: Catalog entry.
        api_key: Anthropic key.
        base_url: Optional endpoint override.
        client_factory: Builds the AsyncAnthropic client (injectable for tests).
    """

    def __init__(
        self,
        spec: ModelSpec,
        api_key: str,
        base_url: str | None = None,
        client_factory: Callable[..., Any] = anthropic.AsyncAnthropic,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.spec = spec
        kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if base_url:
            kwargs["base_url"] = base_url
        self._client = client_factory(**kwargs)
        self._max_tokens = max_tokens

    def _request(self, system: str | None, messages: list[dict], tools: list[ToolSpec]) -> dict:
        request: dict[str, Any] = {
            "model": self.spec.api_name,
            "max_tokens": self._max_tokens,
            "messages": _anthropic_messages(messages),
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in tools
            ]
        return request

    async def stream(
        self,
        system: str | None,
        messages: list[dict],
        tools: list[ToolSpec],
        signal: CancellationSignal | None = None,
    ) -> AsyncIterator[Any]:
        try:
            async with self._client.messages.stream(**self._request(system, messages, tools)) as stream:
                async for event in stream:
                    if signal is not None:
                        signal.raise_if_cancelled()
                    if event.type != "content_block_delta":
                        continue
                    if event.delta.type == "text_delta":
                        yield TextDelta(event.delta.text)
                    elif event.delta.type == "thinking_delta":
                        yield ReasoningDelta(event.delta.thinking)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            raise _anthropic_error(e) from e

        for block in final.content:
            if block.type == "tool_use":
                yield ToolCallRequest(id=block.id, name=block.name, input=dict(block.input or {}))
        yield StepFinish(final.stop_reason, Usage(final.usage.input_tokens, final.usage.output_tokens))

    async def complete(
        self, system: str | None, prompt: str, signal: CancellationSignal | None = None,
    ) -> Completion:
        request = self._request(system, [{"role": "user", "content": [{"type": "text", "text": prompt}]}], [])
        try:
            call = self._client.messages.create(**request)
            message = await (signal.guard(call) if signal is not None else call)
        except anthropic.APIError as e:
            raise _anthropic_error(e) from e
        text = "".join(block.text for block in message.content if block.type == "text")
        return Completion(text=text, usage=Usage(message.usage.input_tokens, message.usage.output_tokens))


# -- resolver ---------------------------------------------------------------


class ModelResolver:
    """Resolve (provider, model, user) to an invokable model.

    Unknown providers or models fall back to the default model. Providers
    that require a key use the user's active key, then the process-wide
    default; when neither exists ``UpstreamConfigError`` is raised.

    Args:
        keys: Per-user key store.
        transport: httpx transport for OpenAI-compatible adapters (tests).
        anthropic_client_factory: Factory for the Anthropic SDK client (tests).
    """

    def __init__(
        self,
        keys: UserKeyService,
        transport: httpx.AsyncBaseTransport | None = None,
        anthropic_client_factory: Callable[..., Any] = anthropic.AsyncAnthropic,
    ) -> None:
        self._keys = keys
        self._transport = transport
        self._anthropic_client_factory = anthropic_client_factory

    def resolve_credential(self, provider_name: str, user_id: str) -> ActiveKey | None:
        provider = get_provider(provider_name)
        if provider is None:
            return None
        key = self._keys.resolve_key(user_id, provider.credential_name, provider.env_vars)
        if key is None and provider.static_key:
            key = ActiveKey(secret=provider.static_key, source="config")
        return key

    def resolve(self, provider: str | None, model: str | None, user_id: str) -> InvokableModel:
        spec = resolve_spec(ModelRef(provider or "", model or ""))
        provider_spec = get_provider(spec.provider)

        key = None
        if provider_spec.requires_key:
            key = self.resolve_credential(spec.provider, user_id)
            if key is None:
                raise UpstreamConfigError(f"No API key configured for provider '{spec.provider}'")

        base_url = (key.base_url if key else None) or provider_spec.base_url
        logger.debug("Resolved model %s (key source=%s)", spec.ref, key.source if key else "none")
        if provider_spec.kind == "anthropic":
            return AnthropicModel(spec, key.secret, base_url, client_factory=self._anthropic_client_factory)
        return OpenAICompatibleModel(spec, key.secret if key else None, base_url, transport=self._transport)
