from __future__ import annotations

import asyncio
import base64
from datetime import timedelta
from typing import Any

import pytest

from agent_hub.chat.backends import (
    ImageDirective,
    ModelImageDirective,
    ModelTextDelta,
    ModelToolCall,
    ModelTurnEnd,
)
from agent_hub.chat.events import (
    Done,
    ErrorEvent,
    Heartbeat,
    ImageCompleted,
    SessionStarted,
    TextDelta,
    TimeoutWarning,
    ToolNameEvent,
    ToolResultEvent,
)
from agent_hub.chat.images import ImageGenerationFlow, ImageRequest
from agent_hub.chat.persistence import PersistenceWriter
from agent_hub.chat.session import (
    TRUNCATED_PLACEHOLDER_TEXT,
    StreamingSession,
    TurnClock,
    TurnPlan,
    TurnState,
)
from agent_hub.chat.tooling import ToolCall, ToolInvocationLoop
from agent_hub.errors import UpstreamModelError
from agent_hub.repository import ChatRepository

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def writer(tmp_path):
    repo = ChatRepository(tmp_path / "chat.db")
    await repo.initialize()
    try:
        yield PersistenceWriter(repo)
    finally:
        await repo.close()


class Sleep:
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds


class ScriptedConversation:
    """Replays one script per model call; scripts hold events, sleeps or errors."""

    model = "gpt-test"

    def __init__(self, *scripts: list[Any]) -> None:
        self._scripts = list(scripts)
        self.submissions: list[tuple[list[ToolCall], list[Any]]] = []

    async def _play(self):
        script = self._scripts.pop(0)
        for item in script:
            if isinstance(item, Sleep):
                await asyncio.sleep(item.seconds)
            elif isinstance(item, Exception):
                raise item
            else:
                yield item

    def stream(self):
        return self._play()

    def submit_tool_results(self, calls, results):
        self.submissions.append((list(calls), list(results)))
        return self._play()


class EchoExecutor:
    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        return {"echo": arguments}

    def get_openai_tools(self, names=None) -> list[dict[str, Any]]:
        return []


class FakeImageClient:
    async def generate_image(self, payload, *, edit_image=None):
        return {"data": [{"b64_json": PNG_B64}]}


class MemoryStore:
    async def put(self, data: bytes, path: str, content_type: str) -> str:
        return path

    async def signed_url(self, storage_path: str, ttl: timedelta) -> str:
        return f"https://signed.test/{storage_path}"


async def _session(
    writer: PersistenceWriter,
    conversation: Any = None,
    *,
    budget: float = 30.0,
    max_iterations: int = 5,
    heartbeat_interval: float = 15.0,
    image_flow: ImageGenerationFlow | None = None,
    leading: list[Any] | None = None,
    executor: Any = None,
    image_request: ImageRequest | None = None,
) -> StreamingSession:
    turn = await writer.open_turn(agent_id="support", text="hello")
    plan = TurnPlan(
        turn=turn,
        model="gpt-test",
        conversation=conversation,
        image_request=image_request,
        leading_events=leading or [],
    )
    return StreamingSession(
        plan,
        writer=writer,
        tool_loop=ToolInvocationLoop(
            executor or EchoExecutor(), max_iterations=max_iterations
        ),
        image_flow=image_flow,
        clock=TurnClock(budget),
        heartbeat_interval=heartbeat_interval,
    )


async def _collect(session: StreamingSession) -> list[Any]:
    return [event async for event in session.events()]


def _assert_single_terminal(events: list[Any]) -> None:
    terminals = [event for event in events if event.terminal]
    assert len(terminals) == 1
    assert events[-1] is terminals[0]


@pytest.mark.anyio
async def test_hello_streams_deltas_then_done(writer) -> None:
    conversation = ScriptedConversation(
        [ModelTextDelta("Hel"), ModelTextDelta("lo"), ModelTurnEnd("resp_1")]
    )
    session = await _session(writer, conversation)

    events = await _collect(session)

    assert [type(event) for event in events] == [TextDelta, TextDelta, Done]
    assert [event.delta for event in events[:2]] == ["Hel", "lo"]
    done = events[-1]
    assert done.truncated is False
    assert session.state is TurnState.TERMINATED

    messages = await writer.history(done.session_id)
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "hello"),
        ("assistant", "Hello"),
    ]
    assert messages[1]["id"] == done.message_id


@pytest.mark.anyio
async def test_leading_events_come_first(writer) -> None:
    conversation = ScriptedConversation([ModelTextDelta("ok")])
    session = await _session(
        writer, conversation, leading=[SessionStarted(session_id="abc")]
    )

    events = await _collect(session)

    assert isinstance(events[0], SessionStarted)
    _assert_single_terminal(events)


@pytest.mark.anyio
async def test_deadline_persists_partial_text_with_warning(writer) -> None:
    conversation = ScriptedConversation(
        [ModelTextDelta("partial"), Sleep(5), ModelTextDelta(" never")]
    )
    session = await _session(writer, conversation, budget=0.3)

    events = await _collect(session)

    assert [type(event) for event in events] == [TextDelta, TimeoutWarning, Done]
    warning = events[1]
    assert warning.reason == "deadline"
    assert warning.content == "partial"
    assert warning.elapsed >= 0.25
    assert events[-1].truncated is True

    messages = await writer.history(events[-1].session_id)
    assert messages[-1]["role"] == "assistant"
    assert messages[-1]["content"] == "partial"
    assert messages[-1]["truncated"] is True


@pytest.mark.anyio
async def test_tool_round_trip_then_answer(writer) -> None:
    conversation = ScriptedConversation(
        [ModelToolCall(ToolCall("call_1", "lookup", '{"q": "x"}')), ModelTurnEnd()],
        [ModelTextDelta("Found it.")],
    )
    session = await _session(writer, conversation)

    events = await _collect(session)

    kinds = [event.type for event in events]
    assert kinds == ["tool_name", "tool_args", "tool_result", "delta", "done"]
    assert isinstance(events[0], ToolNameEvent)
    assert isinstance(events[2], ToolResultEvent) and events[2].status == "success"
    calls, results = conversation.submissions[0]
    assert calls[0].call_id == "call_1"
    assert results[0].result == {"echo": {"q": "x"}}

    messages = await writer.history(events[-1].session_id)
    assert messages[-1]["tool_calls"][0]["name"] == "lookup"


@pytest.mark.anyio
async def test_tool_loop_exhaustion_is_a_truncation(writer) -> None:
    conversation = ScriptedConversation(
        [ModelToolCall(ToolCall("c1", "lookup", "{}"))],
        [ModelToolCall(ToolCall("c2", "lookup", "{}"))],
    )
    session = await _session(writer, conversation, max_iterations=1)

    events = await _collect(session)

    warning = next(event for event in events if isinstance(event, TimeoutWarning))
    assert warning.reason == "tool_loop_exhausted"
    assert isinstance(events[-1], Done) and events[-1].truncated is True
    _assert_single_terminal(events)

    messages = await writer.history(events[-1].session_id)
    assert messages[-1]["content"] == TRUNCATED_PLACEHOLDER_TEXT
    assert messages[-1]["truncated"] is True


@pytest.mark.anyio
async def test_upstream_failure_persists_error_and_ends_with_error(writer) -> None:
    conversation = ScriptedConversation(
        [ModelTextDelta("Hi"), UpstreamModelError(502, "boom")]
    )
    session = await _session(writer, conversation)

    events = await _collect(session)

    assert [event.type for event in events] == ["delta", "error"]
    error = events[-1]
    assert isinstance(error, ErrorEvent)
    assert error.kind == "upstream_error"
    assert error.error == "boom"
    _assert_single_terminal(events)

    messages = await writer.history(error.session_id)
    assert [m["role"] for m in messages] == ["user", "error"]
    assert messages[-1]["content"] == "Error: boom"
    assert messages[-1]["metadata"]["partial_content"] == "Hi"
    assert messages[-1]["id"] == error.message_id


@pytest.mark.anyio
async def test_client_disconnect_persists_nothing_more(writer) -> None:
    conversation = ScriptedConversation([ModelTextDelta("first"), Sleep(5)])
    session = await _session(writer, conversation)

    stream = session.events()
    first = await stream.__anext__()
    await stream.aclose()

    assert isinstance(first, TextDelta)
    assert session.state is not TurnState.TERMINATED
    messages = await writer.history(session._plan.turn.session_id)
    assert [m["role"] for m in messages] == ["user"]


@pytest.mark.anyio
async def test_heartbeats_fill_quiet_periods(writer) -> None:
    conversation = ScriptedConversation([Sleep(0.25), ModelTextDelta("late")])
    session = await _session(writer, conversation, heartbeat_interval=0.05)

    events = await _collect(session)

    assert any(isinstance(event, Heartbeat) for event in events)
    assert Heartbeat().to_sse() == {"comment": "keep-alive"}
    _assert_single_terminal(events)


@pytest.mark.anyio
async def test_model_requested_image_is_attached_and_linked(writer) -> None:
    flow = ImageGenerationFlow(
        FakeImageClient(), MemoryStore(), models=["dall-e-2"], partial_frames=0
    )
    directive = ImageDirective(prompt="a fox", call_id="img_1", arguments='{"prompt": "a fox"}')
    conversation = ScriptedConversation(
        [ModelImageDirective(directive)],
        [ModelTextDelta("Here it is.")],
    )
    session = await _session(writer, conversation, image_flow=flow)

    events = await _collect(session)

    assert [event.type for event in events] == ["image_completed", "delta", "done"]
    completed = events[0]
    assert isinstance(completed, ImageCompleted)
    calls, results = conversation.submissions[0]
    assert calls[0].call_id == "img_1"
    assert results[0].result["url"] == completed.url

    messages = await writer.history(events[-1].session_id)
    assistant = messages[-1]
    assert assistant["content"].startswith("Here it is.")
    assert f"![Generated image]({completed.url})" in assistant["content"]
    assert assistant["attachments"][0]["storage_path"] == completed.storage_path


@pytest.mark.anyio
async def test_sse_encoding_repeats_type_in_data(writer) -> None:
    encoded = TextDelta(delta="x").to_sse()

    assert encoded["event"] == "delta"
    assert '"type": "delta"' in encoded["data"]


class UnauthorizedImageClient:
    def __init__(self) -> None:
        self.models: list[str] = []

    async def generate_image(self, payload, *, edit_image=None):
        self.models.append(payload["model"])
        raise UpstreamModelError(401, "invalid api key")


class SlowStore(MemoryStore):
    async def put(self, data: bytes, path: str, content_type: str) -> str:
        await asyncio.sleep(5)
        return path


class SlowExecutor:
    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        await asyncio.sleep(5)
        return "late"

    def get_openai_tools(self, names=None) -> list[dict[str, Any]]:
        return []


@pytest.mark.anyio
async def test_every_image_directive_in_a_round_gets_a_result(writer) -> None:
    flow = ImageGenerationFlow(
        FakeImageClient(), MemoryStore(), models=["dall-e-2"], partial_frames=0
    )
    conversation = ScriptedConversation(
        [
            ModelImageDirective(
                ImageDirective(prompt="a fox", call_id="call_a", arguments='{"prompt": "a fox"}')
            ),
            ModelImageDirective(
                ImageDirective(prompt="an owl", call_id="call_b", arguments='{"prompt": "an owl"}')
            ),
        ],
        [ModelTextDelta("Here is the fox.")],
    )
    session = await _session(writer, conversation, image_flow=flow)

    events = await _collect(session)

    assert [event.type for event in events] == ["image_completed", "delta", "done"]
    calls, results = conversation.submissions[0]
    assert {call.call_id for call in calls} == {"call_a", "call_b"}
    by_id = {result.call_id: result for result in results}
    assert by_id["call_a"].ok
    assert by_id["call_b"].error_kind == "image_limit"

    messages = await writer.history(events[-1].session_id)
    assert len(messages[-1]["attachments"]) == 1
    assert messages[-1]["tool_calls"][0]["error_kind"] == "image_limit"


@pytest.mark.anyio
async def test_image_directive_without_prompt_is_returned_to_the_model(writer) -> None:
    client = UnauthorizedImageClient()
    flow = ImageGenerationFlow(client, MemoryStore(), models=["dall-e-2"])
    conversation = ScriptedConversation(
        [ModelImageDirective(ImageDirective.from_arguments("{not json", "call_x"))],
        [ModelTextDelta("What should I draw?")],
    )
    session = await _session(writer, conversation, image_flow=flow)

    events = await _collect(session)

    assert [event.type for event in events] == ["delta", "done"]
    assert client.models == []
    calls, results = conversation.submissions[0]
    assert calls[0].call_id == "call_x"
    assert results[0].error_kind == "invalid_arguments"


@pytest.mark.anyio
async def test_exhausted_image_chain_ends_with_one_error(writer) -> None:
    client = UnauthorizedImageClient()
    flow = ImageGenerationFlow(
        client, MemoryStore(), models=["dall-e-3", "dall-e-2"], partial_frames=2
    )
    session = await _session(
        writer,
        image_request=ImageRequest(prompt="draw a lighthouse"),
        image_flow=flow,
        leading=[SessionStarted(session_id="s")],
    )

    events = await _collect(session)

    assert [event.type for event in events] == ["session", "error"]
    error = events[-1]
    assert error.kind == "AllModelsExhausted"
    assert client.models == ["dall-e-3", "dall-e-2"]
    _assert_single_terminal(events)

    messages = await writer.history(error.session_id)
    assert [m["role"] for m in messages] == ["user", "error"]
    assert messages[-1]["metadata"]["failed_models"] == ["dall-e-3", "dall-e-2"]
    assert messages[-1]["id"] == error.message_id


@pytest.mark.anyio
async def test_deadline_during_tool_dispatch_truncates(writer) -> None:
    conversation = ScriptedConversation(
        [ModelTextDelta("Checking"), ModelToolCall(ToolCall("c1", "lookup", "{}"))],
    )
    session = await _session(
        writer, conversation, budget=0.3, executor=SlowExecutor()
    )

    events = await _collect(session)

    assert [event.type for event in events] == [
        "delta",
        "tool_name",
        "tool_args",
        "timeout_warning",
        "done",
    ]
    assert events[3].reason == "deadline"
    assert events[-1].truncated is True

    messages = await writer.history(events[-1].session_id)
    assert messages[-1]["content"] == "Checking"
    assert messages[-1]["truncated"] is True


@pytest.mark.anyio
async def test_deadline_during_image_storage_truncates(writer) -> None:
    flow = ImageGenerationFlow(
        FakeImageClient(), SlowStore(), models=["dall-e-2"], partial_frames=0
    )
    directive = ImageDirective(prompt="a fox", call_id="img_1", arguments='{"prompt": "a fox"}')
    conversation = ScriptedConversation(
        [ModelTextDelta("Drawing now."), ModelImageDirective(directive)],
    )
    session = await _session(writer, conversation, budget=0.3, image_flow=flow)

    events = await _collect(session)

    assert [event.type for event in events] == ["delta", "timeout_warning", "done"]
    assert events[-1].truncated is True

    messages = await writer.history(events[-1].session_id)
    assert messages[-1]["role"] == "assistant"
    assert messages[-1]["content"] == "Drawing now."
    assert messages[-1]["truncated"] is True
    assert messages[-1]["attachments"] == []
