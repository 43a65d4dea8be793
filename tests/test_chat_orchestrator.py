"""End-to-end turn tests for the orchestrator with scripted collaborators."""

from __future__ import annotations

import base64
import json
from datetime import timedelta
from typing import Any

import pytest

from agent_hub.chat.orchestrator import ChatOrchestrator
from agent_hub.config import Settings
from agent_hub.errors import (
    EmptyContent,
    InvalidConfiguration,
    UnknownAgent,
    UnknownSession,
)
from agent_hub.openai_client import ServerSentEvent
from agent_hub.repository import ChatRepository
from agent_hub.schemas.agents import AgentConfig
from agent_hub.schemas.chat import ChatTurnRequest
from agent_hub.services.agents import AgentRegistry

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _sse(payload: dict[str, Any], event: str | None = None) -> ServerSentEvent:
    return ServerSentEvent(data=json.dumps(payload), event=event or payload["type"])


class StubModelClient:
    def __init__(self) -> None:
        self.response_payloads: list[dict[str, Any]] = []
        self.run_payloads: list[tuple[str, dict[str, Any]]] = []
        self.thread_messages: list[tuple[str, Any]] = []
        self.threads_created = 0
        self.image_payloads: list[dict[str, Any]] = []

    async def stream_response(self, payload):
        self.response_payloads.append(payload)
        for chunk in ("Hello", " there"):
            yield _sse({"type": "response.output_text.delta", "delta": chunk})
        yield _sse({"type": "response.completed", "response": {"id": "resp_1"}})

    async def create_thread(self) -> str:
        self.threads_created += 1
        return f"thread_{self.threads_created}"

    async def add_thread_message(self, thread_id, content, *, file_ids=()):
        self.thread_messages.append((thread_id, content))
        return "msg_1"

    async def stream_run(self, thread_id, payload):
        self.run_payloads.append((thread_id, payload))
        yield _sse({"id": "run_1"}, "thread.run.created")
        yield _sse(
            {"delta": {"content": [{"type": "text", "text": {"value": "Clause 4."}}]}},
            "thread.message.delta",
        )
        yield _sse({"id": "run_1"}, "thread.run.completed")

    async def generate_image(self, payload, *, edit_image=None):
        self.image_payloads.append(payload)
        return {"data": [{"b64_json": PNG_B64}]}

    async def aclose(self) -> None:
        return None


class MemoryStore:
    async def put(self, data: bytes, path: str, content_type: str) -> str:
        return path

    async def signed_url(self, storage_path: str, ttl: timedelta) -> str:
        return f"https://signed.test/{storage_path}"


AGENTS = [
    AgentConfig(
        id="support",
        name="Support",
        system_prompt="You are a helpful support agent.",
        allowed_tools=["web_search", "image_generation"],
    ),
    AgentConfig(
        id="legal",
        name="Legal",
        backend="persistent-thread",
        assistant_id="asst_legal",
        background_instructions="Cite clauses.",
    ),
    AgentConfig(id="broken", name="Broken", backend="persistent-thread"),
    AgentConfig(id="retired", name="Retired", is_active=False),
    AgentConfig(
        id="ops",
        name="Ops Desk",
        department="Operations",
        mode="tools",
        allowed_tools=["image_generation"],
    ),
]


@pytest.fixture
async def orchestrator(tmp_path):
    settings = Settings(
        openai_api_key="test-key",
        image_models=["dall-e-2"],
        image_partial_frames=0,
    )
    repo = ChatRepository(tmp_path / "chat.db")
    client = StubModelClient()
    instance = ChatOrchestrator(
        settings,
        repository=repo,
        client=client,  # type: ignore[arg-type]
        agents=AgentRegistry(agents=AGENTS),
        object_store=MemoryStore(),
    )
    await instance.initialize()
    instance.stub_client = client  # type: ignore[attr-defined]
    try:
        yield instance
    finally:
        await instance.shutdown()


async def _run(orchestrator: ChatOrchestrator, body: dict[str, Any]) -> list[Any]:
    session = await orchestrator.prepare_turn(ChatTurnRequest.model_validate(body))
    return [event async for event in session.events() if event.type != "heartbeat"]


@pytest.mark.anyio
async def test_first_turn_creates_session_and_streams(orchestrator) -> None:
    events = await _run(
        orchestrator,
        {
            "sessionId": "temp-123",
            "agentId": "support",
            "messages": [{"role": "user", "content": "hello"}],
        },
    )

    assert [event.type for event in events] == ["session", "delta", "delta", "done"]
    session_id = events[0].session_id
    assert events[-1].session_id == session_id

    messages = await orchestrator.get_messages(session_id)
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "hello"),
        ("assistant", "Hello there"),
    ]
    payload = orchestrator.stub_client.response_payloads[0]
    assert payload["instructions"].startswith(
        "You are Support, an AI assistant. You are a helpful support agent."
    )
    assert "# MODE: PROMPT-ONLY" in payload["instructions"]
    assert payload["reasoning"] == {"effort": "low"}
    assert payload["input"][-1]["content"] == [{"type": "input_text", "text": "hello"}]


@pytest.mark.anyio
async def test_retried_first_turn_reuses_session(orchestrator) -> None:
    body = {
        "sessionId": "temp-retry",
        "agentId": "support",
        "messages": [{"role": "user", "content": "hello"}],
    }

    first = await _run(orchestrator, body)
    second = await _run(orchestrator, body)

    assert first[0].type == "session"
    assert second[0].type == "delta"
    assert first[-1].session_id == second[-1].session_id
    assert await orchestrator.repository.count_sessions("temp-retry") == 1


@pytest.mark.anyio
async def test_follow_up_turn_replays_stored_history(orchestrator) -> None:
    first = await _run(
        orchestrator,
        {"agentId": "support", "messages": [{"role": "user", "content": "one"}]},
    )
    session_id = first[-1].session_id

    await _run(
        orchestrator,
        {
            "sessionId": session_id,
            "agentId": "support",
            "messages": [{"role": "user", "content": "two"}],
        },
    )

    payload = orchestrator.stub_client.response_payloads[-1]
    assert [item["role"] for item in payload["input"]] == ["user", "assistant", "user"]
    assert payload["input"][0]["content"] == "one"


@pytest.mark.anyio
async def test_validation_failures_write_nothing(orchestrator) -> None:
    with pytest.raises(EmptyContent):
        await orchestrator.prepare_turn(
            ChatTurnRequest.model_validate(
                {"agentId": "support", "messages": [{"role": "user", "content": "  "}]}
            )
        )
    with pytest.raises(UnknownAgent):
        await orchestrator.prepare_turn(
            ChatTurnRequest.model_validate(
                {"agentId": "retired", "messages": [{"content": "hi"}]}
            )
        )
    with pytest.raises(InvalidConfiguration):
        await orchestrator.prepare_turn(
            ChatTurnRequest.model_validate(
                {"agentId": "broken", "messages": [{"content": "hi"}]}
            )
        )
    with pytest.raises(UnknownSession):
        await orchestrator.prepare_turn(
            ChatTurnRequest.model_validate(
                {
                    "sessionId": "does-not-exist",
                    "agentId": "support",
                    "messages": [{"content": "hi"}],
                }
            )
        )

    assert await orchestrator.repository.count_sessions() == 0


@pytest.mark.anyio
async def test_effort_coercion_is_announced_before_deltas(orchestrator) -> None:
    events = await _run(
        orchestrator,
        {
            "agentId": "support",
            "reasoningEffort": "minimal",
            "requestedTools": ["search"],
            "messages": [{"content": "latest news?"}],
        },
    )

    assert [event.type for event in events[:3]] == ["session", "effort_coerced", "delta"]
    coerced = events[1]
    assert coerced.requested == "minimal"
    assert coerced.effort == "low"
    payload = orchestrator.stub_client.response_payloads[0]
    assert {"type": "web_search"} in payload["tools"]


@pytest.mark.anyio
async def test_image_request_takes_the_fast_path(orchestrator) -> None:
    events = await _run(
        orchestrator,
        {"agentId": "support", "messages": [{"content": "Draw a picture of a cat"}]},
    )

    assert [event.type for event in events] == ["session", "image_completed", "done"]
    assert orchestrator.stub_client.response_payloads == []
    assert orchestrator.stub_client.image_payloads[0]["prompt"] == "Draw a picture of a cat"

    messages = await orchestrator.get_messages(events[-1].session_id)
    assistant = messages[-1]
    assert assistant["attachments"][0]["type"] == "image"
    assert assistant["content"].startswith("![Generated image](https://signed.test/")


@pytest.mark.anyio
async def test_persistent_thread_is_created_once(orchestrator) -> None:
    first = await _run(
        orchestrator,
        {"agentId": "legal", "messages": [{"content": "Is this allowed?"}]},
    )
    session_id = first[-1].session_id
    await _run(
        orchestrator,
        {
            "sessionId": session_id,
            "agentId": "legal",
            "messages": [{"content": "And this?"}],
        },
    )

    client = orchestrator.stub_client
    assert client.threads_created == 1
    assert [thread for thread, _ in client.run_payloads] == ["thread_1", "thread_1"]
    assert client.run_payloads[0][1]["assistant_id"] == "asst_legal"
    assert client.run_payloads[0][1]["additional_instructions"] == "Cite clauses."
    assert [event.type for event in first] == ["session", "delta", "done"]

    session = await orchestrator.repository.get_session(session_id)
    assert session["thread_id"] == "thread_1"


@pytest.mark.anyio
async def test_list_agents_hides_inactive(orchestrator) -> None:
    agents = await orchestrator.list_agents()

    assert "retired" not in {agent.id for agent in agents}
    assert "support" in {agent.id for agent in agents}


@pytest.mark.anyio
async def test_tools_mode_agent_skips_image_fast_path(orchestrator) -> None:
    events = await _run(
        orchestrator,
        {"agentId": "ops", "messages": [{"content": "Draw a picture of our rack"}]},
    )

    assert [event.type for event in events] == ["session", "delta", "delta", "done"]
    assert orchestrator.stub_client.image_payloads == []
    payload = orchestrator.stub_client.response_payloads[0]
    assert payload["instructions"].startswith(
        "You are Ops Desk, an AI assistant specializing in Operations."
    )
    assert "# MODE: TOOLS" in payload["instructions"]


@pytest.mark.anyio
async def test_first_turn_titles_the_session_for_listing(orchestrator) -> None:
    first = await _run(
        orchestrator,
        {
            "agentId": "ops",
            "userId": "u1",
            "messages": [{"content": "Server room is too hot"}],
        },
    )
    session_id = first[-1].session_id
    await _run(
        orchestrator,
        {
            "sessionId": session_id,
            "agentId": "ops",
            "userId": "u1",
            "messages": [{"content": "Still hot"}],
        },
    )

    sessions = await orchestrator.list_sessions("u1")

    assert len(sessions) == 1
    listed = sessions[0]
    assert listed["session_id"] == session_id
    assert listed["title"] == "Operations: Server room is too hot"
    assert listed["agent_name"] == "Ops Desk"
    assert listed["agent_department"] == "Operations"
    assert listed["message_count"] == 4
    assert await orchestrator.list_sessions("someone-else") == []
