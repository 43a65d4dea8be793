"""Outbound stream events and their SSE encoding."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Optional, Union

SseEvent = dict[str, Optional[str]]


@dataclass(frozen=True)
class _Event:
    type: ClassVar[str] = ""
    terminal: ClassVar[bool] = False

    def payload(self) -> dict[str, Any]:
        return {"type": self.type, **asdict(self)}

    def to_sse(self) -> SseEvent:
        return {"event": self.type, "data": json.dumps(self.payload())}


@dataclass(frozen=True)
class SessionStarted(_Event):
    type: ClassVar[str] = "session"

    session_id: str


@dataclass(frozen=True)
class EffortCoerced(_Event):
    type: ClassVar[str] = "effort_coerced"

    requested: str
    effort: str
    tools: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TextDelta(_Event):
    type: ClassVar[str] = "delta"

    delta: str


@dataclass(frozen=True)
class ToolNameEvent(_Event):
    type: ClassVar[str] = "tool_name"

    call_id: str
    name: str


@dataclass(frozen=True)
class ToolArgsEvent(_Event):
    type: ClassVar[str] = "tool_args"

    call_id: str
    args: Any


@dataclass(frozen=True)
class ToolResultEvent(_Event):
    type: ClassVar[str] = "tool_result"

    call_id: str
    name: str
    status: str
    result: Any = None
    error_kind: str | None = None


@dataclass(frozen=True)
class PartialImage(_Event):
    type: ClassVar[str] = "partial_image"

    index: int
    b64_json: str
    output_format: str


@dataclass(frozen=True)
class ImageCompleted(_Event):
    type: ClassVar[str] = "image_completed"

    url: str
    storage_path: str
    size: str | None
    format: str
    bytes: int
    model: str
    quality: str | None = None


@dataclass(frozen=True)
class TimeoutWarning(_Event):
    type: ClassVar[str] = "timeout_warning"

    content: str
    reason: str
    elapsed: float


@dataclass(frozen=True)
class Done(_Event):
    type: ClassVar[str] = "done"
    terminal: ClassVar[bool] = True

    session_id: str
    message_id: int | None
    truncated: bool = False


@dataclass(frozen=True)
class ErrorEvent(_Event):
    type: ClassVar[str] = "error"
    terminal: ClassVar[bool] = True

    error: str
    kind: str
    session_id: str | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class Heartbeat:
    """Inert keep-alive unit encoded as an SSE comment."""

    type: ClassVar[str] = "heartbeat"
    terminal: ClassVar[bool] = False

    def to_sse(self) -> SseEvent:
        return {"comment": "keep-alive"}


StreamEvent = Union[
    SessionStarted,
    EffortCoerced,
    TextDelta,
    ToolNameEvent,
    ToolArgsEvent,
    ToolResultEvent,
    PartialImage,
    ImageCompleted,
    TimeoutWarning,
    Done,
    ErrorEvent,
    Heartbeat,
]


__all__ = [
    "Done",
    "EffortCoerced",
    "ErrorEvent",
    "Heartbeat",
    "ImageCompleted",
    "PartialImage",
    "SessionStarted",
    "SseEvent",
    "StreamEvent",
    "TextDelta",
    "TimeoutWarning",
    "ToolArgsEvent",
    "ToolNameEvent",
    "ToolResultEvent",
]
