"""Tests for turn persistence rules."""

import json

import pytest

from chatbridge.db.models import Agent
from chatbridge.services.agent_service import AgentService
from chatbridge.services.message_persistence import (
    MessagePersistenceReconciler,
    keep_terminal_parts,
    normalize_part,
)
from chatbridge.services.thread_store import ThreadStore


@pytest.fixture
def threads(db_session):
    store = ThreadStore(db_session)
    store.create_thread("t1", "u1")
    return store


@pytest.fixture
def reconciler(threads, db_session):
    return MessagePersistenceReconciler(threads, AgentService(db_session))


def user_msg(message_id="m-user", text="hi"):
    return {"id": message_id, "role": "user", "parts": [{"type": "text", "text": text}]}


def assistant_msg(message_id="m-bot", parts=None, metadata=None):
    return {
        "id": message_id,
        "role": "assistant",
        "parts": parts if parts is not None else [{"type": "text", "text": "hello"}],
        "metadata": metadata,
    }


class TestNormalizePart:
    """Tests for per-part cleanup."""

    def test_stream_only_fields_removed(self):
        part = {"type": "text", "text": "x", "providerMetadata": {"a": 1}, "preliminary": True}
        assert normalize_part(part) == {"type": "text", "text": "x"}

    def test_tool_output_is_json_stable(self):
        part = {"type": "tool-call", "toolCallId": "c1", "output": {"tuple": (1, 2)}, "input": {"n": 1}}
        assert normalize_part(part)["output"] == {"tuple": [1, 2]}

    def test_terminal_parts_win(self):
        stored = [{"type": "tool-call", "toolCallId": "c1", "state": "output-available", "output": 1}]
        incoming = [
            {"type": "tool-call", "toolCallId": "c1", "state": "input-available"},
            {"type": "text", "text": "after"},
        ]
        merged = keep_terminal_parts(stored, incoming)
        assert merged[0]["state"] == "output-available"
        assert merged[1] == {"type": "text", "text": "after"}


class TestPlan:
    """Tests for which rows a turn writes."""

    def test_user_then_assistant(self, reconciler):
        rows = reconciler.plan(user_msg(), assistant_msg(), image_branch=False)
        assert [r["id"] for r in rows] == ["m-user", "m-bot"]

    def test_merged_row_when_response_reuses_id(self, reconciler):
        response = assistant_msg("m-user", metadata={"usage": {"totalTokens": 3}})
        rows = reconciler.plan(user_msg(), response, image_branch=False)
        assert len(rows) == 1
        assert rows[0]["role"] == "assistant"
        assert rows[0]["metadata"] == {"usage": {"totalTokens": 3}}

    def test_image_branch_never_merges(self, reconciler):
        rows = reconciler.plan(user_msg(), assistant_msg("m-user"), image_branch=True)
        assert len(rows) == 2

    def test_no_response(self, reconciler):
        assert [r["id"] for r in reconciler.plan(user_msg(), None, image_branch=False)] == ["m-user"]


class TestReconcile:
    """Tests for storage writes."""

    def test_rows_written_in_order(self, reconciler, threads):
        reconciler.reconcile("t1", user_msg(), assistant_msg())
        assert [m["id"] for m in threads.list_messages("t1")] == ["m-user", "m-bot"]

    def test_resend_is_idempotent(self, reconciler, threads):
        reconciler.reconcile("t1", user_msg(), assistant_msg())
        reconciler.reconcile("t1", user_msg(text="edited"), assistant_msg(parts=[{"type": "text", "text": "again"}]))
        messages = threads.list_messages("t1")
        assert [m["id"] for m in messages] == ["m-user", "m-bot"]
        assert messages[0]["parts"][0]["text"] == "edited"
        assert messages[1]["parts"][0]["text"] == "again"

    def test_stored_terminal_tool_part_survives(self, reconciler, threads):
        done = {"type": "tool-call", "toolCallId": "c1", "toolName": "echo", "state": "output-available", "output": "ok"}
        reconciler.reconcile("t1", user_msg(), assistant_msg(parts=[done]))
        pending = {"type": "tool-call", "toolCallId": "c1", "toolName": "echo", "state": "input-available"}
        reconciler.reconcile("t1", user_msg(), assistant_msg(parts=[pending]))
        assert threads.get_message("t1", "m-bot")["parts"][0]["state"] == "output-available"

    def test_agent_is_touched(self, reconciler, db_session):
        agent = Agent(user_id="u1", name="a", updated_at="2000-01-01T00:00:00+00:00")
        db_session.add(agent)
        db_session.commit()
        reconciler.reconcile("t1", user_msg(), assistant_msg(), agent_id=agent.id)
        db_session.refresh(agent)
        assert agent.updated_at > "2000-01-01T00:00:00+00:00"

    def test_metadata_is_persisted(self, reconciler, threads):
        reconciler.reconcile("t1", user_msg(), assistant_msg(metadata={"chatModel": {"provider": "openai"}}))
        assert threads.get_message("t1", "m-bot")["metadata"] == {"chatModel": {"provider": "openai"}}

    def test_corrupt_parts_read_as_empty(self, reconciler, threads, db_session):
        row = threads.upsert_message("t1", user_msg())
        row.parts_json = "{nope"
        db_session.commit()
        assert threads.get_message("t1", "m-user")["parts"] == []
        assert json.loads(threads.upsert_message("t1", user_msg()).parts_json)[0]["text"] == "hi"
