"""Exception hierarchy shared by the chat orchestration layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from fastapi import status


class ChatError(Exception):
    """Base class for errors raised while handling a chat turn."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind: str = "chat_error"

    def __init__(self, detail: Any = None):
        message = str(detail) if detail is not None else self.__class__.__name__
        super().__init__(message)
        self.detail = detail if detail is not None else message


class ValidationError(ChatError):
    """The turn was rejected before any model call."""

    status_code = status.HTTP_400_BAD_REQUEST
    kind = "validation_error"


class EmptyTurn(ValidationError):
    kind = "empty_turn"

    def __init__(self, detail: Any = None):
        super().__init__(detail or "The turn contains no messages.")


class EmptyContent(ValidationError):
    kind = "empty_content"

    def __init__(self, detail: Any = None):
        super().__init__(detail or "The latest message has no content.")


class UnknownAgent(ValidationError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "unknown_agent"


class UnknownSession(ValidationError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "unknown_session"


class ToolNotAllowed(ValidationError):
    kind = "tool_not_allowed"


class IncompatibleEffort(ValidationError):
    kind = "incompatible_effort"


class InvalidConfiguration(ChatError):
    """An agent is configured in a way the router cannot serve."""

    status_code = status.HTTP_400_BAD_REQUEST
    kind = "invalid_configuration"


class UpstreamModelError(ChatError):
    """Wrap transport or API failures when talking to the model provider."""

    kind = "upstream_error"

    def __init__(self, status_code: int, detail: Any):
        super().__init__(detail)
        self.status_code = status_code


class ToolExecutionError(ChatError):
    """A tool failed; the loop reports it back to the model, never to the user."""

    kind = "tool_error"

    def __init__(self, error_kind: str, detail: Any):
        super().__init__(detail)
        self.error_kind = error_kind


class ImageGenerationExhausted(ChatError):
    """Every model in the image fallback chain failed."""

    kind = "AllModelsExhausted"

    def __init__(self, last_error: Any, failed_models: Sequence[str] = ()):
        detail = getattr(last_error, "detail", last_error)
        super().__init__(detail)
        self.last_error = last_error
        self.failed_models = list(failed_models)


AllModelsExhausted = ImageGenerationExhausted


@dataclass(frozen=True)
class TimeoutTruncation:
    """Record of a turn that stopped early; not an error for the client."""

    reason: str
    elapsed: float

    DEADLINE = "deadline"
    TOOL_LOOP_EXHAUSTED = "tool_loop_exhausted"


__all__ = [
    "AllModelsExhausted",
    "ChatError",
    "EmptyContent",
    "EmptyTurn",
    "ImageGenerationExhausted",
    "IncompatibleEffort",
    "InvalidConfiguration",
    "TimeoutTruncation",
    "ToolExecutionError",
    "ToolNotAllowed",
    "UnknownAgent",
    "UnknownSession",
    "UpstreamModelError",
    "ValidationError",
]
