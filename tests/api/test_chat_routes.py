"""Tests for POST /api/chat and GET /api/chat/models."""

import json

import pytest
from fastapi.testclient import TestClient

from chatbridge.api.main import app
from chatbridge.api.routes.chat import get_chat_engine
from chatbridge.orchestrator.engine import ChatEngine
from chatbridge.orchestrator.llm import StepFinish, TextDelta, Usage
from chatbridge.services.thread_store import ThreadStore


class ReplyModel:
    """Answers every stream() call with the same text."""

    def __init__(self, text: str = "Hi there") -> None:
        self.text = text

    async def stream(self, system, messages, tools, signal=None):
        yield TextDelta(self.text)
        yield StepFinish("stop", Usage(1, 1))


class StaticResolver:
    def __init__(self, model) -> None:
        self.model = model

    def resolve(self, provider, model, user_id):
        return self.model


class NoMcp:
    def sync(self, db):
        pass

    async def list_all_tools(self):
        return []

    def get_client(self, server_id):
        return None


@pytest.fixture
def scripted_engine(client: TestClient, db_session):
    app.dependency_overrides[get_chat_engine] = lambda: ChatEngine(
        db_session, resolver=StaticResolver(ReplyModel()), mcp_manager=NoMcp(),
    )
    return client


def chat_body(thread_id="t1", text="hello"):
    return {
        "id": thread_id,
        "message": {"id": "m1", "role": "user", "parts": [{"type": "text", "text": text}]},
        "chatModel": {"provider": "openai", "model": "gpt-4.1"},
    }


def parse_sse(text: str) -> list[dict]:
    return [json.loads(line[len("data:"):].strip()) for line in text.splitlines() if line.startswith("data:")]


class TestPostChat:
    """Tests for the streamed turn endpoint."""

    def test_streams_turn_events(self, scripted_engine: TestClient, auth_headers, db_session):
        response = scripted_engine.post("/api/chat", headers=auth_headers, json=chat_body())
        assert response.status_code == 200
        assert "text/event-stream" in response.headers["content-type"]

        events = parse_sse(response.text)
        names = [e["event"] for e in events]
        assert names[0] == "start"
        assert names[-1] == "finish"
        text = "".join(e["data"]["delta"] for e in events if e["event"] == "text-delta")
        assert text == "Hi there"

        stored = ThreadStore(db_session).list_messages("t1")
        assert [m["role"] for m in stored] == ["user", "assistant"]

    def test_foreign_thread_forbidden(self, scripted_engine: TestClient, auth_headers, db_session):
        ThreadStore(db_session).create_thread("t1", "someone-else")
        response = scripted_engine.post("/api/chat", headers=auth_headers, json=chat_body())
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_bad_role_is_validation_error(self, scripted_engine: TestClient, auth_headers):
        body = chat_body()
        body["message"]["role"] = "system"
        response = scripted_engine.post("/api/chat", headers=auth_headers, json=body)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_missing_provider_key(self, client: TestClient, auth_headers):
        response = client.post("/api/chat", headers=auth_headers, json=chat_body())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UPSTREAM_CONFIG_ERROR"

    def test_requires_user(self, scripted_engine: TestClient):
        assert scripted_engine.post("/api/chat", json=chat_body()).status_code == 401


def test_model_catalog(client: TestClient):
    catalog = client.get("/api/chat/models").json()
    providers = {group["provider"]: group["models"] for group in catalog}
    assert "openai" in providers
    gpt = next(m for m in providers["openai"] if m["name"] == "gpt-4.1")
    assert gpt["isToolCallUnsupported"] is False
