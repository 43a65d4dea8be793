from __future__ import annotations

import json
from typing import Any

from fastapi import FastAPI
from fastapi.testclient import TestClient

from agent_hub.chat.events import Done, TextDelta
from agent_hub.errors import EmptyContent, UnknownSession
from agent_hub.routers.agents import router as agents_router
from agent_hub.routers.chat import get_chat_orchestrator, router
from agent_hub.schemas.agents import AgentSummary
from agent_hub.schemas.chat import ChatTurnRequest


class StubSession:
    async def events(self):
        yield TextDelta(delta="Hi")
        yield Done(session_id="s1", message_id=2)


class StubOrchestrator:
    def __init__(self) -> None:
        self.requests: list[ChatTurnRequest] = []
        self.session_queries: list[tuple[Any, int]] = []

    async def prepare_turn(self, request: ChatTurnRequest) -> StubSession:
        self.requests.append(request)
        if not request.messages or not request.messages[-1].text:
            raise EmptyContent()
        return StubSession()

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        if session_id != "s1":
            raise UnknownSession(f"Unknown session: {session_id}")
        return [
            {
                "id": 1,
                "session_id": "s1",
                "role": "assistant",
                "content": "partial",
                "attachments": [],
                "tool_calls": None,
                "truncated": True,
                "model": "gpt-5-mini",
                "metadata": {},
                "created_at": "2025-01-01T00:00:00+00:00",
            }
        ]

    async def list_sessions(self, user_id=None, *, limit=50) -> list[dict[str, Any]]:
        self.session_queries.append((user_id, limit))
        return [
            {
                "session_id": "s1",
                "user_id": user_id,
                "title": None,
                "agent_id": "support",
                "agent_name": "Support",
                "agent_department": None,
                "message_count": 3,
                "created_at": "2025-01-01T00:00:00+00:00",
                "updated_at": "2025-01-01T00:05:00+00:00",
            }
        ]

    async def list_agents(self) -> list[AgentSummary]:
        return [AgentSummary(id="support", name="Support", mode="prompt")]


def make_client() -> tuple[TestClient, StubOrchestrator]:
    app = FastAPI()
    stub = StubOrchestrator()
    app.dependency_overrides[get_chat_orchestrator] = lambda: stub
    app.include_router(router)
    app.include_router(agents_router)
    return TestClient(app), stub


def _parse_sse(body: str) -> list[tuple[str, dict[str, Any]]]:
    events: list[tuple[str, dict[str, Any]]] = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        name = None
        data = None
        for line in block.splitlines():
            if line.startswith("event:"):
                name = line.split(":", 1)[1].strip()
            elif line.startswith("data:"):
                data = line.split(":", 1)[1].strip()
        if name and data:
            events.append((name, json.loads(data)))
    return events


def test_stream_emits_named_sse_events() -> None:
    client, stub = make_client()

    response = client.post(
        "/api/chat/stream",
        json={
            "sessionId": "temp-1",
            "agentId": "support",
            "reasoningEffort": "low",
            "messages": [{"role": "user", "content": "x", "content_md": "hello"}],
        },
    )

    assert response.status_code == 200
    events = _parse_sse(response.text)
    assert [name for name, _ in events] == ["delta", "done"]
    assert events[0][1] == {"type": "delta", "delta": "Hi"}
    assert events[1][1]["session_id"] == "s1"

    request = stub.requests[0]
    assert request.session_id == "temp-1"
    assert request.conversation_key == "temp-1"
    assert request.reasoning_effort == "low"
    assert request.messages[0].text == "hello"


def test_empty_content_is_rejected_before_streaming() -> None:
    client, _ = make_client()

    response = client.post(
        "/api/chat/stream",
        json={"agentId": "support", "messages": [{"role": "user", "content": " "}]},
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "The latest message has no content."}


def test_missing_agent_id_is_unprocessable() -> None:
    client, _ = make_client()

    response = client.post("/api/chat/stream", json={"messages": []})

    assert response.status_code == 422


def test_session_messages_include_truncation_flag() -> None:
    client, _ = make_client()

    response = client.get("/api/chat/sessions/s1/messages")

    assert response.status_code == 200
    body = response.json()
    assert body[0]["truncated"] is True
    assert body[0]["content"] == "partial"


def test_unknown_session_is_not_found() -> None:
    client, _ = make_client()

    response = client.get("/api/chat/sessions/nope/messages")

    assert response.status_code == 404


def test_agents_listing() -> None:
    client, _ = make_client()

    response = client.get("/api/agents")

    assert response.status_code == 200
    assert response.json() == [
        {"id": "support", "name": "Support", "department": None, "mode": "prompt"}
    ]


def test_recent_sessions_listing() -> None:
    client, stub = make_client()

    response = client.get("/api/chat/sessions", params={"userId": "u1", "limit": 10})

    assert response.status_code == 200
    body = response.json()
    assert body[0]["session_id"] == "s1"
    assert body[0]["title"] == "New Chat"
    assert body[0]["message_count"] == 3
    assert "user_id" not in body[0]
    assert stub.session_queries == [("u1", 10)]


def test_recent_sessions_limit_is_capped() -> None:
    client, _ = make_client()

    response = client.get("/api/chat/sessions", params={"limit": 500})

    assert response.status_code == 422
