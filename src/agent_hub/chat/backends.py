"""Adapters turning provider event streams into a small semantic vocabulary.

Two strategies exist. The stateless one resends the full input to
``/responses`` on every call; tool continuations append ``function_call`` and
``function_call_output`` items and resend. The persistent one posts the new
user message to a provider thread and starts a run; tool continuations submit
outputs to the waiting run.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, Sequence, Union

from fastapi import status

from ..errors import UpstreamModelError
from ..openai_client import OpenAIClient, ServerSentEvent
from .context import AssembledInput
from .policies import RoutingDecision
from .tooling import ToolCall, ToolCallResult

logger = logging.getLogger(__name__)

IMAGE_TOOL_NAME = "generate_image"

IMAGE_TOOL_SPEC: dict[str, Any] = {
    "type": "function",
    "name": IMAGE_TOOL_NAME,
    "description": (
        "Generate or edit an image from a text prompt. Use when the user asks "
        "for a picture, illustration, diagram or photo."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "prompt": {"type": "string"},
            "size": {
                "type": "string",
                "enum": ["auto", "1024x1024", "1024x1536", "1536x1024"],
            },
            "quality": {"type": "string", "enum": ["auto", "low", "medium", "high"]},
            "output_format": {"type": "string", "enum": ["png", "jpeg", "webp"]},
            "background": {
                "type": "string",
                "enum": ["auto", "transparent", "opaque"],
            },
            "edit_previous": {"type": "boolean"},
        },
        "required": ["prompt"],
    },
}


@dataclass(frozen=True)
class ModelTextDelta:
    text: str


@dataclass(frozen=True)
class ModelToolCall:
    call: ToolCall


@dataclass(frozen=True)
class ImageDirective:
    """Request to enter the image sub-flow."""

    prompt: str
    size: str | None = None
    quality: str | None = None
    output_format: str | None = None
    background: str | None = None
    edit_previous: bool = False
    call_id: str | None = None
    arguments: str = "{}"

    @classmethod
    def from_arguments(cls, arguments: str, call_id: str | None = None) -> "ImageDirective":
        try:
            data = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        return cls(
            prompt=str(data.get("prompt") or ""),
            size=data.get("size"),
            quality=data.get("quality"),
            output_format=data.get("output_format"),
            background=data.get("background"),
            edit_previous=bool(data.get("edit_previous")),
            call_id=call_id,
            arguments=arguments or "{}",
        )


@dataclass(frozen=True)
class ModelImageDirective:
    directive: ImageDirective


@dataclass(frozen=True)
class ModelTurnEnd:
    response_id: str | None = None


ModelEvent = Union[ModelTextDelta, ModelToolCall, ModelImageDirective, ModelTurnEnd]


class ModelConversation(Protocol):
    """One turn's conversation with a backend."""

    model: str

    def stream(self) -> AsyncIterator[ModelEvent]:
        ...

    def submit_tool_results(
        self, calls: Sequence[ToolCall], results: Sequence[ToolCallResult]
    ) -> AsyncIterator[ModelEvent]:
        ...


def _failure_detail(payload: dict[str, Any] | None, fallback: str) -> str:
    if not payload:
        return fallback
    for container in (payload.get("response"), payload.get("data"), payload):
        if not isinstance(container, dict):
            continue
        for key in ("error", "last_error"):
            error = container.get(key)
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        if container.get("message"):
            return str(container["message"])
    return fallback


class ResponsesConversation:
    """Stateless strategy over the `/responses` endpoint."""

    def __init__(
        self,
        client: OpenAIClient,
        decision: RoutingDecision,
        assembled: AssembledInput,
        *,
        function_tools: Sequence[dict[str, Any]] = (),
    ) -> None:
        self._client = client
        self.model = decision.model
        self._decision = decision
        self._input = assembled.responses_input()
        self._instructions = assembled.instructions
        self._tools = self._build_tools(decision, function_tools)

    @staticmethod
    def _build_tools(
        decision: RoutingDecision, function_tools: Sequence[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        for name in decision.builtin_tools:
            if name == "image_generation":
                tools.append(dict(IMAGE_TOOL_SPEC))
            else:
                tools.append({"type": name})
        tools.extend(dict(tool) for tool in function_tools)
        return tools

    def build_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "input": list(self._input),
            "store": False,
        }
        if self._instructions:
            payload["instructions"] = self._instructions
        if self._tools:
            payload["tools"] = list(self._tools)
        # Reasoning is not accepted alongside image generation.
        if self._decision.effort and "image_generation" not in self._decision.tools:
            payload["reasoning"] = {"effort": self._decision.effort}
        return payload

    async def stream(self) -> AsyncIterator[ModelEvent]:
        async for event in self._client.stream_response(self.build_payload()):
            for item in self._translate(event):
                yield item

    async def submit_tool_results(
        self, calls: Sequence[ToolCall], results: Sequence[ToolCallResult]
    ) -> AsyncIterator[ModelEvent]:
        for call, result in zip(calls, results):
            self._input.append(
                {
                    "type": "function_call",
                    "call_id": call.call_id,
                    "name": call.name,
                    "arguments": call.arguments,
                }
            )
            self._input.append(
                {
                    "type": "function_call_output",
                    "call_id": result.call_id,
                    "output": result.output(),
                }
            )
        async for item in self.stream():
            yield item

    def _translate(self, event: ServerSentEvent) -> list[ModelEvent]:
        payload = event.json()
        if payload is None:
            return []
        kind = payload.get("type") or event.event

        if kind == "response.output_text.delta":
            delta = payload.get("delta")
            return [ModelTextDelta(delta)] if isinstance(delta, str) and delta else []
        if kind == "response.output_item.done":
            item = payload.get("item") or {}
            if item.get("type") != "function_call":
                return []
            call_id = str(item.get("call_id") or item.get("id") or "")
            name = str(item.get("name") or "")
            arguments = item.get("arguments") or ""
            if name == IMAGE_TOOL_NAME:
                return [ModelImageDirective(ImageDirective.from_arguments(arguments, call_id))]
            if not name:
                return []
            return [ModelToolCall(ToolCall(call_id=call_id, name=name, arguments=arguments))]
        if kind == "response.completed":
            response = payload.get("response") or {}
            return [ModelTurnEnd(response_id=response.get("id"))]
        if kind in {"response.failed", "response.incomplete", "error"}:
            raise UpstreamModelError(
                status.HTTP_502_BAD_GATEWAY,
                _failure_detail(payload, f"Model stream reported {kind}"),
            )
        return []


class ThreadConversation:
    """Persistent-thread strategy over the threads/runs endpoints.

    ``resolve_thread`` returns the session's provider thread, creating and
    binding it on first use.
    """

    def __init__(
        self,
        client: OpenAIClient,
        decision: RoutingDecision,
        assembled: AssembledInput,
        *,
        resolve_thread: Callable[[], Awaitable[str]],
    ) -> None:
        if not decision.assistant_id:
            raise ValueError("Thread conversations need an assistant id")
        self._client = client
        self.model = decision.model
        self._assistant_id = decision.assistant_id
        self._assembled = assembled
        self._resolve_thread = resolve_thread
        self.thread_id: str | None = None
        self.run_id: str | None = None

    def build_run_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"assistant_id": self._assistant_id}
        instructions = self._assembled.thread_instructions()
        if instructions:
            payload["additional_instructions"] = instructions
        return payload

    async def stream(self) -> AsyncIterator[ModelEvent]:
        if self.thread_id is None:
            self.thread_id = await self._resolve_thread()
            await self._client.add_thread_message(
                self.thread_id,
                self._assembled.thread_content(),
                file_ids=self._assembled.thread_file_ids(),
            )
        async for event in self._client.stream_run(
            self.thread_id, self.build_run_payload()
        ):
            for item in self._translate(event):
                yield item

    async def submit_tool_results(
        self, calls: Sequence[ToolCall], results: Sequence[ToolCallResult]
    ) -> AsyncIterator[ModelEvent]:
        if self.run_id is None or self.thread_id is None:
            raise UpstreamModelError(
                status.HTTP_502_BAD_GATEWAY, "Run requested tools without an id"
            )
        outputs = [
            {"tool_call_id": result.call_id, "output": result.output()}
            for result in results
        ]
        async for event in self._client.stream_tool_outputs(
            self.thread_id, self.run_id, outputs
        ):
            for item in self._translate(event):
                yield item

    def _translate(self, event: ServerSentEvent) -> list[ModelEvent]:
        payload = event.json()
        kind = event.event
        if payload is None:
            return []

        if kind == "thread.run.created" and payload.get("id"):
            self.run_id = str(payload["id"])
            return []
        if kind == "thread.message.delta":
            delta = payload.get("delta") or {}
            texts: list[ModelEvent] = []
            for part in delta.get("content") or []:
                if part.get("type") != "text":
                    continue
                value = (part.get("text") or {}).get("value")
                if isinstance(value, str) and value:
                    texts.append(ModelTextDelta(value))
            return texts
        if kind == "thread.run.requires_action":
            self.run_id = str(payload.get("id") or self.run_id or "")
            required = (payload.get("required_action") or {}).get(
                "submit_tool_outputs"
            ) or {}
            events: list[ModelEvent] = []
            for tool_call in required.get("tool_calls") or []:
                function = tool_call.get("function") or {}
                call_id = str(tool_call.get("id") or "")
                name = str(function.get("name") or "")
                arguments = function.get("arguments") or ""
                if name == IMAGE_TOOL_NAME:
                    events.append(
                        ModelImageDirective(ImageDirective.from_arguments(arguments, call_id))
                    )
                elif name:
                    events.append(ModelToolCall(ToolCall(call_id, name, arguments)))
            events.append(ModelTurnEnd(response_id=self.run_id))
            return events
        if kind == "thread.run.completed":
            return [ModelTurnEnd(response_id=payload.get("id"))]
        if kind in {"thread.run.failed", "thread.run.expired", "thread.run.cancelled", "error"}:
            raise UpstreamModelError(
                status.HTTP_502_BAD_GATEWAY,
                _failure_detail(payload, f"Thread run reported {kind}"),
            )
        return []


__all__ = [
    "IMAGE_TOOL_NAME",
    "IMAGE_TOOL_SPEC",
    "ImageDirective",
    "ModelConversation",
    "ModelEvent",
    "ModelImageDirective",
    "ModelTextDelta",
    "ModelToolCall",
    "ModelTurnEnd",
    "ResponsesConversation",
    "ThreadConversation",
]
