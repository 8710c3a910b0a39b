"""Decide which message rows a finished turn writes, and in what shape.

Rules:
    image branch     -> user message, then the image message (two rows)
    response reuses  -> one merged row with the response's parts and metadata
    the inbound id
    otherwise        -> user message, then the assistant response (two rows)

Every part is normalized before the write: streaming-only marker fields
are stripped and tool outputs are JSON-stabilized. A tool-call part that
already reached a terminal state in the stored row is never replaced by
an in-progress copy of itself.
"""

import json
import logging
from typing import Any

from chatbridge.services.agent_service import AgentService
from chatbridge.services.thread_store import ThreadStore

logger = logging.getLogger(__name__)

STREAM_ONLY_FIELDS = ("providerMetadata", "callProviderMetadata", "preliminary", "streamId")
TERMINAL_TOOL_STATES = ("output-available", "output-error")


def _stabilize(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def normalize_part(part: dict) -> dict:
    """Return a persistable copy of one message part."""
    clean = {k: v for k, v in part.items() if k not in STREAM_ONLY_FIELDS}
    if clean.get("type") == "tool-call":
        if "output" in clean:
            clean["output"] = _stabilize(clean["output"])
        if "input" in clean:
            clean["input"] = _stabilize(clean["input"])
    return clean


def keep_terminal_parts(stored: list[dict], incoming: list[dict]) -> list[dict]:
    terminal = {
        p["toolCallId"]: p
        for p in stored
        if p.get("type") == "tool-call" and p.get("state") in TERMINAL_TOOL_STATES
    }
    if not terminal:
        return incoming
    result = []
    for part in incoming:
        if (
            part.get("type") == "tool-call"
            and part.get("toolCallId") in terminal
            and part.get("state") not in TERMINAL_TOOL_STATES
        ):
            result.append(terminal[part["toolCallId"]])
        else:
            result.append(part)
    return result


def _normalized(message: dict) -> dict:
    return {**message, "parts": [normalize_part(p) for p in message.get("parts") or []]}


class MessagePersistenceReconciler:
    """Write the rows for one finished turn.

    Args:
        threads: Thread store used for id-keyed upserts.
        agents: Agent store used to touch the bound agent.
    """

    def __init__(self, threads: ThreadStore, agents: AgentService) -> None:
        self._threads = threads
        self._agents = agents

    def plan(self, user_message: dict, response: dict | None, image_branch: bool) -> list[dict]:
        """Return the rows to write, in order, without touching storage."""
        if response is None:
            return [_normalized(user_message)]
        if not image_branch and response.get("id") == user_message.get("id"):
            return [_normalized({**user_message, **response})]
        return [_normalized(user_message), _normalized(response)]

    def reconcile(
        self,
        thread_id: str,
        user_message: dict,
        response: dict | None,
        image_branch: bool = False,
        agent_id: str | None = None,
    ) -> list[dict]:
        rows = self.plan(user_message, response, image_branch)
        for row in rows:
            stored = self._threads.get_message(thread_id, row["id"])
            if stored is not None:
                row["parts"] = keep_terminal_parts(stored["parts"], row["parts"])
            self._threads.upsert_message(thread_id, row)

        if agent_id:
            try:
                self._agents.touch_agent(agent_id)
            except Exception as e:
                logger.warning("Failed to touch agent %s: %s", agent_id, e)

        logger.info("Persisted %d message row(s) to thread %s (image=%s)", len(rows), thread_id, image_branch)
        return rows
