"""Lifecycle of one streamed chat turn.

A turn moves through ``TurnState`` and always ends with exactly one ``done``
or ``error`` event. The driver runs as its own task and writes events into a
per-turn queue; a heartbeat task adds keep-alive units to the same queue. Both
tasks live only as long as ``StreamingSession.events()`` is being iterated.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Sequence

from ..errors import (
    ChatError,
    ImageGenerationExhausted,
    TimeoutTruncation,
    UpstreamModelError,
)
from .backends import (
    IMAGE_TOOL_NAME,
    ImageDirective,
    ModelConversation,
    ModelEvent,
    ModelImageDirective,
    ModelTextDelta,
    ModelToolCall,
)
from .events import (
    Done,
    ErrorEvent,
    Heartbeat,
    StreamEvent,
    TextDelta,
    TimeoutWarning,
)
from .images import ImageGenerationFlow, ImageRequest, ImageResult
from .persistence import PersistenceWriter, TurnRecord
from .tooling import ToolCall, ToolCallResult, ToolInvocationLoop

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "_The assistant returned an empty response._"
TRUNCATED_PLACEHOLDER_TEXT = "_The response was cut short before any text was produced._"


class TurnState(str, Enum):
    ASSEMBLING = "assembling"
    STREAMING = "streaming"
    IN_TOOL_LOOP = "in_tool_loop"
    IN_IMAGE_FLOW = "in_image_flow"
    PERSISTING = "persisting"
    TERMINATED = "terminated"


_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.ASSEMBLING: frozenset(
        {TurnState.STREAMING, TurnState.IN_IMAGE_FLOW, TurnState.PERSISTING}
    ),
    TurnState.STREAMING: frozenset(
        {TurnState.IN_TOOL_LOOP, TurnState.IN_IMAGE_FLOW, TurnState.PERSISTING}
    ),
    TurnState.IN_TOOL_LOOP: frozenset({TurnState.STREAMING, TurnState.PERSISTING}),
    TurnState.IN_IMAGE_FLOW: frozenset(
        {TurnState.STREAMING, TurnState.IN_TOOL_LOOP, TurnState.PERSISTING}
    ),
    TurnState.PERSISTING: frozenset({TurnState.TERMINATED}),
    TurnState.TERMINATED: frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


class _DeadlineReached(Exception):
    pass


class TurnClock:
    """Wall-clock budget for a turn, measured on the event loop clock."""

    def __init__(self, budget_seconds: float, *, started_at: float | None = None):
        loop = asyncio.get_running_loop()
        self._loop = loop
        self.started_at = loop.time() if started_at is None else started_at
        self.budget = budget_seconds

    @property
    def deadline(self) -> float:
        return self.started_at + self.budget

    def elapsed(self) -> float:
        return self._loop.time() - self.started_at

    def remaining(self) -> float:
        return self.deadline - self._loop.time()

    def expired(self) -> bool:
        return self.remaining() <= 0


@dataclass
class TurnPlan:
    """Inputs the controller needs once routing and assembly are done."""

    turn: TurnRecord
    model: str
    conversation: ModelConversation | None = None
    image_request: ImageRequest | None = None
    leading_events: list[StreamEvent] = field(default_factory=list)
    reference_image_url: str | None = None


_END = object()


class StreamingSession:
    """Drive one turn and expose its events as an async iterator."""

    def __init__(
        self,
        plan: TurnPlan,
        *,
        writer: PersistenceWriter,
        tool_loop: ToolInvocationLoop,
        image_flow: ImageGenerationFlow | None,
        clock: TurnClock,
        heartbeat_interval: float = 15.0,
    ) -> None:
        if plan.conversation is None and plan.image_request is None:
            raise ValueError("A turn needs a model conversation or an image request")
        self._plan = plan
        self._writer = writer
        self._tool_loop = tool_loop
        self._image_flow = image_flow
        self._clock = clock
        self._heartbeat_interval = heartbeat_interval
        self._state = TurnState.ASSEMBLING
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._text: list[str] = []
        self._tool_calls: list[dict[str, Any]] = []
        self._images: list[ImageResult] = []
        self.truncation: TimeoutTruncation | None = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def accumulated_text(self) -> str:
        return "".join(self._text)

    def _transition(self, target: TurnState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransition(f"{self._state.value} -> {target.value}")
        logger.debug("Turn %s: %s -> %s", self._plan.turn.user_message_id, self._state.value, target.value)
        self._state = target

    async def _emit(self, event: StreamEvent) -> None:
        if self._state is TurnState.TERMINATED:
            raise InvalidTransition(f"Event {event.type} after terminal event")
        self._queue.put_nowait(event)

    async def _terminate(self, event: Done | ErrorEvent) -> None:
        await self._emit(event)
        self._transition(TurnState.TERMINATED)

    # ------------------------------------------------------------------
    # Public iterator
    # ------------------------------------------------------------------
    async def events(self) -> AsyncGenerator[StreamEvent, None]:
        heartbeat = asyncio.create_task(self._heartbeat())
        driver = asyncio.create_task(self._drive())
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    break
                yield item
        finally:
            heartbeat.cancel()
            driver.cancel()
            await asyncio.gather(heartbeat, driver, return_exceptions=True)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self._state is TurnState.TERMINATED:
                return
            self._queue.put_nowait(Heartbeat())

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------
    async def _drive(self) -> None:
        try:
            for event in self._plan.leading_events:
                await self._emit(event)
            try:
                await self._run_with_deadline()
            except (UpstreamModelError, ImageGenerationExhausted) as exc:
                await self._fail(exc)
                return
            await self._complete()
        except asyncio.CancelledError:
            logger.info(
                "Turn %s cancelled by client in state %s",
                self._plan.turn.user_message_id,
                self._state.value,
            )
            raise
        except Exception as exc:
            logger.exception("Unexpected failure while streaming turn")
            if self._state is not TurnState.TERMINATED:
                await self._fail(exc)
        finally:
            self._queue.put_nowait(_END)

    async def _run_with_deadline(self) -> None:
        remaining = self._clock.remaining()
        try:
            if remaining <= 0:
                raise _DeadlineReached()
            async with asyncio.timeout(remaining):
                try:
                    await self._run()
                except TimeoutError as exc:
                    # Raised by a callee, not by this scope's deadline.
                    raise UpstreamModelError(504, "Model call timed out") from exc
        except (TimeoutError, _DeadlineReached):
            elapsed = self._clock.elapsed()
            logger.info(
                "Turn %s hit its deadline after %.1fs; persisting partial output",
                self._plan.turn.user_message_id,
                elapsed,
            )
            self.truncation = TimeoutTruncation(TimeoutTruncation.DEADLINE, elapsed)

    async def _run(self) -> None:
        conversation = self._plan.conversation
        if conversation is None:
            assert self._plan.image_request is not None
            self._transition(TurnState.IN_IMAGE_FLOW)
            await self._generate_image(self._plan.image_request)
            return

        self._transition(TurnState.STREAMING)
        stream: AsyncIterator[ModelEvent] = conversation.stream()
        while True:
            calls, directives = await self._consume(stream)
            if not calls and not directives:
                return

            pending_calls: list[ToolCall] = []
            pending_results: list[ToolCallResult] = []
            generated = False
            for directive in directives:
                call = ToolCall(
                    directive.call_id or "", IMAGE_TOOL_NAME, directive.arguments
                )
                if generated:
                    logger.info(
                        "Declining extra image request %s in the same round",
                        directive.call_id,
                    )
                    outcome = ToolCallResult(
                        call.call_id,
                        IMAGE_TOOL_NAME,
                        error_kind="image_limit",
                        detail="Only one image can be generated per response.",
                    )
                elif not directive.prompt.strip():
                    outcome = ToolCallResult(
                        call.call_id,
                        IMAGE_TOOL_NAME,
                        error_kind="invalid_arguments",
                        detail="generate_image needs a non-empty 'prompt' string.",
                    )
                else:
                    self._transition(TurnState.IN_IMAGE_FLOW)
                    image = await self._generate_image(
                        self._image_request_for(directive)
                    )
                    generated = True
                    outcome = ToolCallResult(
                        call.call_id,
                        IMAGE_TOOL_NAME,
                        result={
                            "status": "completed",
                            "url": image.url,
                            "note": "The image is already shown to the user.",
                        },
                    )
                if not outcome.ok:
                    self._record_tool_calls([call], [outcome])
                if directive.call_id:
                    pending_calls.append(call)
                    pending_results.append(outcome)

            if self._tool_loop.exhausted:
                if calls:
                    self.truncation = TimeoutTruncation(
                        TimeoutTruncation.TOOL_LOOP_EXHAUSTED, self._clock.elapsed()
                    )
                    logger.warning(
                        "Tool loop exhausted after %d rounds", self._tool_loop.iterations
                    )
                return

            if calls:
                self._transition(TurnState.IN_TOOL_LOOP)
                results = await self._tool_loop.dispatch(calls, self._emit)
                self._record_tool_calls(calls, results)
                pending_calls.extend(calls)
                pending_results.extend(results)
            elif pending_calls:
                self._tool_loop.start_round()
            else:
                return

            if self._state is not TurnState.STREAMING:
                self._transition(TurnState.STREAMING)
            stream = conversation.submit_tool_results(pending_calls, pending_results)

    async def _consume(
        self, stream: AsyncIterator[ModelEvent]
    ) -> tuple[list[ToolCall], list[ImageDirective]]:
        calls: list[ToolCall] = []
        directives: list[ImageDirective] = []
        async with aclosing(stream):  # type: ignore[type-var]
            async for event in stream:
                if self._clock.expired():
                    raise _DeadlineReached()
                if isinstance(event, ModelTextDelta):
                    self._text.append(event.text)
                    await self._emit(TextDelta(delta=event.text))
                elif isinstance(event, ModelToolCall):
                    calls.append(event.call)
                elif isinstance(event, ModelImageDirective):
                    directives.append(event.directive)
        return calls, directives

    def _image_request_for(self, directive: ImageDirective) -> ImageRequest:
        reference = self._plan.reference_image_url if directive.edit_previous else None
        return ImageRequest(
            prompt=directive.prompt,
            size=directive.size,
            quality=directive.quality,
            output_format=directive.output_format,
            background=directive.background,
            reference_url=reference,
        )

    async def _generate_image(self, request: ImageRequest) -> ImageResult:
        if self._image_flow is None:
            raise UpstreamModelError(503, "Image generation is not configured")
        result = await self._image_flow.run(
            request, self._emit, session_id=self._plan.turn.session_id
        )
        self._images.append(result)
        return result

    def _record_tool_calls(
        self, calls: Sequence[ToolCall], results: Sequence[ToolCallResult]
    ) -> None:
        for call, result in zip(calls, results):
            self._tool_calls.append(
                {
                    "call_id": call.call_id,
                    "name": call.name,
                    "arguments": call.arguments,
                    "status": "success" if result.ok else "error",
                    "error_kind": result.error_kind,
                }
            )

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------
    def _final_content(self) -> str:
        parts = [self.accumulated_text] if self.accumulated_text else []
        parts.extend(image.markdown() for image in self._images)
        return "\n\n".join(parts)

    async def _complete(self) -> None:
        self._transition(TurnState.PERSISTING)
        content = self._final_content()
        truncation = self.truncation
        if truncation is not None:
            await self._emit(
                TimeoutWarning(
                    content=self.accumulated_text,
                    reason=truncation.reason,
                    elapsed=round(truncation.elapsed, 3),
                )
            )
            if not content.strip():
                content = TRUNCATED_PLACEHOLDER_TEXT
        elif not content.strip():
            content = EMPTY_RESPONSE_TEXT

        metadata: dict[str, Any] = {}
        if truncation is not None:
            metadata["truncation_reason"] = truncation.reason
        if self._images:
            metadata["image_models"] = [image.model for image in self._images]
        try:
            message_id = await self._writer.write_assistant(
                self._plan.turn,
                content,
                model=self._plan.model,
                truncated=truncation is not None,
                attachments=[image.attachment() for image in self._images] or None,
                tool_calls=self._tool_calls or None,
                metadata=metadata or None,
            )
        except Exception as exc:
            logger.exception("Failed to persist assistant message")
            await self._terminate(
                ErrorEvent(
                    error=f"Failed to save the response: {exc}",
                    kind="persistence_error",
                    session_id=self._plan.turn.session_id,
                )
            )
            return

        await self._terminate(
            Done(
                session_id=self._plan.turn.session_id,
                message_id=message_id,
                truncated=truncation is not None,
            )
        )

    async def _fail(self, exc: BaseException) -> None:
        if self._state is not TurnState.PERSISTING:
            self._transition(TurnState.PERSISTING)
        kind = exc.kind if isinstance(exc, ChatError) else "internal_error"
        detail = exc.detail if isinstance(exc, ChatError) else str(exc)
        logger.warning("Turn %s failed (%s): %s", self._plan.turn.user_message_id, kind, detail)

        metadata: dict[str, Any] = {"error_kind": kind}
        if isinstance(exc, UpstreamModelError):
            metadata["status_code"] = exc.status_code
        if isinstance(exc, ImageGenerationExhausted):
            metadata["failed_models"] = exc.failed_models
        if self.accumulated_text:
            metadata["partial_content"] = self.accumulated_text

        message_id: int | None = None
        if not self._plan.turn.finished:
            try:
                message_id = await self._writer.write_error(
                    self._plan.turn,
                    f"Error: {detail}",
                    model=self._plan.model,
                    metadata=metadata,
                )
            except Exception:
                logger.exception("Failed to persist error message")
        await self._terminate(
            ErrorEvent(
                error=str(detail),
                kind=kind,
                session_id=self._plan.turn.session_id,
                message_id=message_id,
            )
        )


__all__ = ["StreamingSession", "TurnClock", "TurnPlan", "TurnState"]
