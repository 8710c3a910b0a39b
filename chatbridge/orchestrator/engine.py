"""Conversation turn engine.

A turn is split in two so request errors surface as HTTP errors before
any streaming starts:

* ``prepare_turn`` checks thread ownership, builds the working message
  list (idempotent resend), merges agent mentions, computes tool
  eligibility and resolves the model or the image plan.
* ``stream_turn`` loads tools, converts attached documents, resumes
  client-executed tool calls, builds the system prompt, then drives
  either the image branch or the streaming step loop and hands the
  result to persistence.

Events are dicts ``{"event": type, "data": {...}}``.

Example:
    engine = ChatEngine(db)
    prepared = engine.prepare_turn(user_id, TurnRequest(thread_id, message))
    async for event in engine.stream_turn(prepared, CancellationSignal()):
        ...
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator
from uuid import uuid4

import httpx
from sqlalchemy.orm import Session

from chatbridge.errors import DomainError, ForbiddenError, TransientModelError, ValidationError
from chatbridge.orchestrator import images
from chatbridge.orchestrator.cancellation import CancellationSignal, TurnCancelled, TurnCredentials
from chatbridge.orchestrator.llm import (
    InvokableModel,
    ModelResolver,
    ReasoningDelta,
    StepFinish,
    TextDelta,
    ToolCallRequest,
    ToolSpec,
    Usage,
    to_model_messages,
)
from chatbridge.orchestrator.models import ModelRef, ModelSpec, get_default_ref, resolve_spec
from chatbridge.orchestrator.streaming import WordChunker
from chatbridge.orchestrator.system_prompt import (
    TOOL_CALL_UNSUPPORTED_MODEL_PROMPT,
    build_mcp_customizations_prompt,
    build_user_system_prompt,
    filter_mcp_customizations,
    merge_system_prompt,
)
from chatbridge.orchestrator.tools import (
    ToolContext,
    ToolDescriptor,
    ToolRuntime,
    ToolSets,
    exclude_tool_execution,
    load_tool_sets,
    split_result,
)
from chatbridge.services.agent_service import AgentRecord, AgentService
from chatbridge.services.mcp_client import get_mcp_manager
from chatbridge.services.mcp_customization_service import McpCustomizationService
from chatbridge.services.message_persistence import MessagePersistenceReconciler, keep_terminal_parts
from chatbridge.services.thread_store import ThreadStore
from chatbridge.services.user_key_service import UserKeyService
from chatbridge.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

MAX_STEPS = 10
MAX_RETRIES = 2
RETRY_BASE_DELAY = 0.5
EXA_ENV_VARS = ("EXA_API_KEY",)


@dataclass
class TurnRequest:
    """One inbound turn as accepted by POST /api/chat."""

    thread_id: str
    message: dict
    chat_model: Any = None
    tool_choice: str = "auto"
    allowed_mcp_servers: dict[str, Any] | None = None
    allowed_app_default_toolkit: list[str] | None = None
    mentions: list[dict] = field(default_factory=list)
    image_settings: dict | None = None


@dataclass
class PreparedTurn:
    user_id: str
    request: TurnRequest
    message: dict
    working: list[dict]
    spec: ModelSpec
    mentions: list[dict]
    tool_call_allowed: bool
    manual: bool
    agent: AgentRecord | None = None
    model: InvokableModel | None = None
    image_plan: images.ImagePlan | None = None

    @property
    def thread_id(self) -> str:
        return self.request.thread_id

    @property
    def image_branch(self) -> bool:
        return self.image_plan is not None


def _event(event_type: str, **data: Any) -> dict:
    return {"event": event_type, "data": data}


def _new_id() -> str:
    return str(uuid4())


def compute_tool_call_allowed(spec: ModelSpec, tool_choice: str, mentions: list[dict]) -> bool:
    return spec.supports_tools and (tool_choice != "none" or bool(mentions))


def build_working_list(history: list[dict], message: dict) -> list[dict]:
    """Append message, or replace the last row when it carries the same id."""
    if history and history[-1].get("id") == message.get("id"):
        return [*history[:-1], message]
    return [*history, message]


def is_manual(request: TurnRequest) -> bool:
    metadata = request.message.get("metadata") or {}
    return request.tool_choice == "manual" or (isinstance(metadata, dict) and metadata.get("toolChoice") == "manual")


def _is_pending_tool_part(part: dict) -> bool:
    return part.get("type") == "tool-call" and part.get("state") == "input-available"


def _is_declined(part: dict) -> bool:
    approval = part.get("approval")
    if isinstance(approval, dict):
        return approval.get("approved") is False
    return approval is False


class _ToolExecution:
    """Run one handler while relaying the events it emits."""

    def __init__(self, tool: ToolDescriptor, runtime_args: dict[str, Any], args: dict[str, Any]) -> None:
        self._tool = tool
        self._runtime_args = runtime_args
        self._args = args
        self.output: Any = None
        self.error: str | None = None

    async def events(self) -> AsyncIterator[dict]:
        queue: asyncio.Queue = asyncio.Queue()
        runtime = ToolRuntime(**self._runtime_args, emit=queue.put)
        task = asyncio.ensure_future(runtime.signal.guard(self._tool.handler(self._args, runtime)))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait()
        finally:
            if not task.done():
                task.cancel()

        try:
            self.output, self.error = split_result(task.result())
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning("Tool %s raised: %s", self._tool.name, e)
            self.error = sanitize_error_message(str(e)) or type(e).__name__


class ChatEngine:
    """Drive chat turns for one database session.

    Args:
        db: SQLAlchemy session.
        resolver: Model resolver; built from the key store when omitted.
        mcp_manager: MCP clients manager; the process-wide one when omitted.
        http_transport: httpx transport for built-in web tools and image engines.
        key_dir: Override for the credential key directory.
    """

    def __init__(
        self,
        db: Session,
        resolver: ModelResolver | None = None,
        mcp_manager: Any = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        key_dir: str | None = None,
    ) -> None:
        self._db = db
        self._threads = ThreadStore(db)
        self._agents = AgentService(db)
        self._keys = UserKeyService(db, key_dir=key_dir)
        self._resolver = resolver or ModelResolver(self._keys)
        self._mcp_manager = mcp_manager
        self._http_transport = http_transport
        self._persistence = MessagePersistenceReconciler(self._threads, self._agents)

    # ------------------------------------------------------------------
    # prepare
    # ------------------------------------------------------------------

    def prepare_turn(self, user_id: str, request: TurnRequest) -> PreparedTurn:
        """Validate and resolve everything that can fail before streaming.

        Raises:
            ValidationError: Malformed message.
            ForbiddenError: Thread belongs to another user.
            UpstreamConfigError: No credential for the model or image engine.
        """
        message = request.message or {}
        if not message.get("id") or message.get("role") not in ("user", "assistant"):
            raise ValidationError("message must have an id and role 'user' or 'assistant'")
        if not isinstance(message.get("parts"), list):
            raise ValidationError("message.parts must be a list")

        thread = self._threads.get_thread(request.thread_id)
        if thread is not None and thread.user_id != user_id:
            raise ForbiddenError("Thread belongs to another user")

        stored = self._threads.get_message(request.thread_id, message["id"])
        if stored is not None:
            message = {**message, "parts": keep_terminal_parts(stored["parts"], message["parts"])}
        working = build_working_list(self._threads.list_messages(request.thread_id), message)

        mentions = [m for m in request.mentions or [] if isinstance(m, dict)]
        agent = None
        agent_mention = next((m for m in mentions if m.get("type") == "agent" and m.get("agentId")), None)
        if agent_mention is not None:
            agent = self._agents.get_agent(agent_mention["agentId"], user_id)
            if agent is not None:
                mentions = [*mentions, *agent.instructions.mentions]

        spec = resolve_spec(ModelRef.parse(request.chat_model) or get_default_ref())
        prepared = PreparedTurn(
            user_id=user_id,
            request=request,
            message=message,
            working=working,
            spec=spec,
            mentions=mentions,
            tool_call_allowed=compute_tool_call_allowed(spec, request.tool_choice, mentions),
            manual=is_manual(request),
            agent=agent,
        )

        settings = request.image_settings or {}
        if settings.get("enabled") or spec.image_only or spec.image_capable:
            prepared.image_plan = images.plan(
                images.extract_prompt(message["parts"]), settings, spec, user_id, self._keys,
            )
        else:
            prepared.model = self._resolver.resolve(spec.provider, spec.name, user_id)

        # No side effects before this point.
        if thread is None:
            title = images.extract_prompt(message["parts"])[:80]
            self._threads.create_thread(request.thread_id, user_id, title=title)
        return prepared

    # ------------------------------------------------------------------
    # stream
    # ------------------------------------------------------------------

    async def stream_turn(self, prepared: PreparedTurn, signal: CancellationSignal) -> AsyncIterator[dict]:
        credentials = TurnCredentials()
        started_at = time.perf_counter()
        tool_sets = ToolSets()
        outcome = "error"
        try:
            exa = self._keys.resolve_key(prepared.user_id, "exa", EXA_ENV_VARS)
            credentials.set("exa", exa.secret if exa else None)

            resumed = prepared.message["role"] == "assistant"
            response_id = prepared.message["id"] if resumed and not prepared.image_branch else _new_id()
            yield _event("start", messageId=response_id)

            tool_sets = await signal.guard(load_tool_sets(self._tool_context(prepared)))
            tools = tool_sets.merged()
            runtime_args = {"signal": signal, "credentials": credentials, "tools": tools}

            message = {**prepared.message, "parts": list(prepared.message["parts"])}
            message = await self._convert_documents(message, tool_sets, runtime_args)
            async for event in self._resume_pending_tools(message, tools, runtime_args):
                yield event
            working = [*prepared.working[:-1], message]

            system = self._build_system_prompt(prepared, tool_sets)

            if prepared.image_branch:
                async for event in self._image_branch(prepared, message, response_id, signal):
                    yield event
            else:
                async for event in self._text_branch(
                    prepared, message, response_id, working, system, tool_sets, runtime_args,
                ):
                    yield event
            outcome = "finish"
        except TurnCancelled:
            outcome = "cancelled"
            logger.info("Turn cancelled for thread %s", prepared.thread_id)
        except DomainError as e:
            logger.warning("Turn failed for thread %s: %s", prepared.thread_id, e.message)
            yield _event("error", errorText=sanitize_error_message(e.message), code=e.code)
        except Exception as e:
            logger.error("Turn failed for thread %s: %s", prepared.thread_id, e, exc_info=True)
            yield _event("error", errorText=sanitize_error_message(str(e)) or "Internal error", code="INTERNAL_ERROR")
        finally:
            credentials.clear()
            counts = tool_sets.counts()
            logger.info(
                "turn_timing thread_id=%s model=%s tool_mode=%s agent=%s mcp=%d workflow=%d builtin=%d "
                "image=%s outcome=%s elapsed=%.3f",
                prepared.thread_id, prepared.spec.ref, prepared.request.tool_choice,
                prepared.agent.name if prepared.agent else "-",
                counts["mcp"], counts["workflow"], counts["builtin"],
                prepared.image_branch, outcome, time.perf_counter() - started_at,
            )

    def _tool_context(self, prepared: PreparedTurn) -> ToolContext:
        return ToolContext(
            user_id=prepared.user_id,
            db=self._db,
            tool_call_allowed=prepared.tool_call_allowed,
            mentions=prepared.mentions,
            allowed_mcp_servers=prepared.request.allowed_mcp_servers,
            allowed_app_default_toolkit=prepared.request.allowed_app_default_toolkit,
            mcp_manager=self._mcp_manager or get_mcp_manager(),
            http_transport=self._http_transport,
        )

    def _build_system_prompt(self, prepared: PreparedTurn, tool_sets: ToolSets) -> str:
        customization_prompt = ""
        if tool_sets.merged():
            try:
                customizations = McpCustomizationService(self._db).for_user(prepared.user_id)
                customization_prompt = build_mcp_customizations_prompt(
                    filter_mcp_customizations(tool_sets.mcp, customizations)
                )
            except Exception as e:
                logger.warning("MCP customization lookup failed: %s", e)

        return merge_system_prompt(
            build_user_system_prompt(
                self._threads.get_user(prepared.user_id),
                self._threads.get_user_preferences(prepared.user_id),
                prepared.agent,
            ),
            customization_prompt,
            None if prepared.spec.supports_tools else TOOL_CALL_UNSUPPORTED_MODEL_PROMPT,
        )

    async def _convert_documents(self, message: dict, tool_sets: ToolSets, runtime_args: dict) -> dict:
        """Replace file parts with markdown text when a markitdown tool is loaded."""
        file_parts = [p for p in message["parts"] if p.get("type") == "file"]
        if not file_parts:
            return message
        tool = next(
            (
                t for name, t in tool_sets.mcp.items()
                if "markitdown" in (t.origin.server_name or "").lower() or "markitdown" in name.lower()
            ),
            None,
        )
        if tool is None or tool.handler is None:
            return message

        urls = [p["url"] for p in file_parts if str(p.get("url", "")).startswith(("http://", "https://"))]
        if urls:
            args: dict[str, Any] = {"urls": urls}
        else:
            files = []
            for part in file_parts:
                url = str(part.get("url") or "")
                data = url.split(",", 1)[1] if url.startswith("data:") and "," in url else part.get("base64")
                if data:
                    files.append({
                        "filename": part.get("filename") or "file",
                        "mimeType": part.get("mediaType") or "application/octet-stream",
                        "data": data,
                    })
            if not files:
                return message
            args = {"files": files}

        try:
            output, error = split_result(await tool.handler(args, ToolRuntime(tool_call_id="markitdown", **runtime_args)))
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning("Document conversion failed: %s", e)
            return message
        if error is not None:
            logger.warning("Document conversion failed: %s", error)
            return message

        if isinstance(output, list):
            text = "\n\n".join(o if isinstance(o, str) else json.dumps(o) for o in output)
        else:
            text = output if isinstance(output, str) else json.dumps(output, default=str)
        if not text or not text.strip():
            return message
        parts = [p for p in message["parts"] if p.get("type") != "file"]
        logger.info("Converted %d attachment(s) to markdown", len(file_parts))
        return {**message, "parts": [*parts, {"type": "text", "text": text}]}

    async def _resume_pending_tools(
        self, message: dict, tools: dict[str, ToolDescriptor], runtime_args: dict,
    ) -> AsyncIterator[dict]:
        """Execute client-resumed tool calls still in the input-available state.

        Mutates the message parts in place.
        """
        for index, part in enumerate(message["parts"]):
            if not _is_pending_tool_part(part):
                continue
            call_id = part["toolCallId"]
            if _is_declined(part):
                output, error = {"declined": True}, None
            else:
                tool = tools.get(part.get("toolName"))
                if tool is None or tool.handler is None:
                    output, error = None, f"Tool '{part.get('toolName')}' is not available"
                else:
                    execution = _ToolExecution(tool, {**runtime_args, "tool_call_id": call_id}, part.get("input") or {})
                    async for event in execution.events():
                        yield event
                    output, error = execution.output, execution.error

            if error is None:
                message["parts"][index] = {**part, "state": "output-available", "output": output}
                yield _event("tool-output-available", toolCallId=call_id, output=output)
            else:
                message["parts"][index] = {**part, "state": "output-error", "errorText": error}
                yield _event("tool-output-error", toolCallId=call_id, errorText=error)

    def _metadata(self, prepared: PreparedTurn, tool_count: int, usage: Usage) -> dict:
        return {
            "agentId": prepared.agent.id if prepared.agent else None,
            "toolChoice": prepared.request.tool_choice,
            "toolCount": tool_count,
            "chatModel": {"provider": prepared.spec.provider, "model": prepared.spec.name},
            "usage": usage.to_dict(),
        }

    async def _image_branch(
        self, prepared: PreparedTurn, message: dict, response_id: str, signal: CancellationSignal,
    ) -> AsyncIterator[dict]:
        prompt = images.extract_prompt(message["parts"])
        if not prompt:
            raise ValidationError("Image generation needs a text prompt")
        image = await images.generate(replace(prepared.image_plan, prompt=prompt), signal, self._http_transport)
        part = images.to_markdown_part(image)

        response = {
            "id": response_id,
            "role": "assistant",
            "parts": [part],
            "metadata": {**self._metadata(prepared, 0, Usage()), "imageEngine": prepared.image_plan.engine},
        }
        yield _event("start-step")
        yield _event("text-start", id=response["id"])
        yield _event("text-delta", id=response["id"], delta=part["text"])
        yield _event("text-end", id=response["id"])
        yield _event("finish-step", finishReason="stop")

        self._persistence.reconcile(
            prepared.thread_id, message, response, image_branch=True,
            agent_id=prepared.agent.id if prepared.agent else None,
        )
        yield _event("finish", messageId=response["id"], metadata=response["metadata"])

    async def _text_branch(
        self,
        prepared: PreparedTurn,
        message: dict,
        response_id: str,
        working: list[dict],
        system: str,
        tool_sets: ToolSets,
        runtime_args: dict,
    ) -> AsyncIterator[dict]:
        signal = runtime_args["signal"]
        tools = tool_sets.merged()
        if prepared.manual:
            tools = {**exclude_tool_execution({**tool_sets.mcp, **tool_sets.workflow}), **tool_sets.builtin}
        tool_specs = [ToolSpec(t.name, t.description, t.input_schema) for t in tools.values()]

        parts: list[dict] = list(message["parts"]) if response_id == message["id"] else []
        model_messages = to_model_messages(working)
        usage = Usage()
        model = prepared.model

        for step in range(MAX_STEPS):
            yield _event("start-step")
            parts.append({"type": "step-start"})

            attempt = 0
            while True:
                text, reasoning = "", ""
                calls: list[ToolCallRequest] = []
                finish: StepFinish | None = None
                emitted = False
                text_open = False
                chunker = WordChunker()
                try:
                    async for chunk in model.stream(system, model_messages, tool_specs, signal):
                        signal.raise_if_cancelled()
                        if isinstance(chunk, TextDelta):
                            text += chunk.text
                            for piece in chunker.feed(chunk.text):
                                if not text_open:
                                    text_open = True
                                    yield _event("text-start", id=response_id)
                                emitted = True
                                yield _event("text-delta", id=response_id, delta=piece)
                        elif isinstance(chunk, ReasoningDelta):
                            reasoning += chunk.text
                            emitted = True
                            yield _event("reasoning-delta", id=response_id, delta=chunk.text)
                        elif isinstance(chunk, ToolCallRequest):
                            calls.append(chunk)
                        elif isinstance(chunk, StepFinish):
                            finish = chunk
                    break
                except TransientModelError as e:
                    if emitted or attempt >= MAX_RETRIES:
                        raise
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    attempt += 1
                    logger.warning(
                        "Transient model error on %s (attempt %d/%d), retrying in %.1fs: %s",
                        prepared.spec.ref, attempt, MAX_RETRIES, delay, e.message,
                    )
                    await signal.guard(asyncio.sleep(delay))

            rest = chunker.flush()
            if rest:
                if not text_open:
                    text_open = True
                    yield _event("text-start", id=response_id)
                yield _event("text-delta", id=response_id, delta=rest)
            if text_open:
                yield _event("text-end", id=response_id)

            step_parts: list[dict] = []
            if reasoning:
                step_parts.append({"type": "reasoning", "text": reasoning})
            if text:
                step_parts.append({"type": "text", "text": text})
            if finish is not None:
                usage.add(finish.usage)

            waiting_on_client = False
            for call in calls:
                yield _event("tool-input-available", toolCallId=call.id, toolName=call.name, input=call.input)
                part = {
                    "type": "tool-call",
                    "toolCallId": call.id,
                    "toolName": call.name,
                    "state": "input-available",
                    "input": call.input,
                }
                tool = tools.get(call.name)
                if tool is not None and tool.handler is None:
                    waiting_on_client = True
                    step_parts.append(part)
                    continue
                if tool is None:
                    output, error = None, f"Unknown tool '{call.name}'"
                else:
                    execution = _ToolExecution(tool, {**runtime_args, "tool_call_id": call.id}, call.input)
                    async for event in execution.events():
                        yield event
                    output, error = execution.output, execution.error
                if error is None:
                    part.update(state="output-available", output=output)
                    yield _event("tool-output-available", toolCallId=call.id, output=output)
                else:
                    part.update(state="output-error", errorText=error)
                    yield _event("tool-output-error", toolCallId=call.id, errorText=error)
                step_parts.append(part)

            parts.extend(step_parts)
            yield _event(
                "finish-step",
                finishReason=finish.finish_reason if finish else None,
                usage=(finish.usage if finish else Usage()).to_dict(),
            )
            if not calls or waiting_on_client:
                break
            model_messages.extend(to_model_messages([{"role": "assistant", "parts": step_parts}]))

        response = {
            "id": response_id,
            "role": "assistant",
            "parts": parts,
            "metadata": self._metadata(prepared, len(tools), usage),
        }
        self._persistence.reconcile(
            prepared.thread_id, message, response,
            agent_id=prepared.agent.id if prepared.agent else None,
        )
        yield _event("finish", messageId=response_id, metadata=response["metadata"])
