"""Bounded tool-call loop driven from within a streaming turn."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence

from ..errors import ToolExecutionError
from .events import StreamEvent, ToolArgsEvent, ToolNameEvent, ToolResultEvent

logger = logging.getLogger(__name__)

DEFAULT_TOOL_ITERATION_LIMIT = 5


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    call_id: str
    name: str
    arguments: str

    def parsed_arguments(self) -> dict[str, Any]:
        text = self.arguments.strip() if self.arguments else ""
        if not text:
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ToolExecutionError(
                "invalid_arguments", f"Arguments are not valid JSON: {exc.msg}"
            ) from exc
        if not isinstance(parsed, dict):
            raise ToolExecutionError(
                "invalid_arguments", "Arguments must be a JSON object"
            )
        return parsed


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    name: str
    result: Any = None
    error_kind: str | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    def output(self) -> str:
        """Serialize for the model's next turn."""

        if not self.ok:
            return json.dumps(
                {"error": {"errorKind": self.error_kind, "detail": self.detail}}
            )
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, default=str)


class ToolExecutor(Protocol):
    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        """Run a tool, raising ``ToolExecutionError`` on failure."""
        ...

    def get_openai_tools(
        self, names: Iterable[str] | None = None
    ) -> list[dict[str, Any]]:
        ...


Emit = Callable[[StreamEvent], Awaitable[None]]
AuditHook = Callable[[ToolCall, ToolCallResult, int], Awaitable[None]]


class ToolInvocationLoop:
    """Execute model-requested tools, at most ``max_iterations`` rounds per turn."""

    def __init__(
        self,
        executor: ToolExecutor | None,
        *,
        max_iterations: int = DEFAULT_TOOL_ITERATION_LIMIT,
        tool_timeout: float | None = None,
        audit: AuditHook | None = None,
    ) -> None:
        self._executor = executor
        self._max_iterations = max_iterations
        self._tool_timeout = tool_timeout
        self._audit = audit
        self.iterations = 0

    @property
    def exhausted(self) -> bool:
        return self.iterations >= self._max_iterations

    def start_round(self) -> None:
        """Count one model continuation against the iteration cap."""

        if self.exhausted:
            raise RuntimeError("Tool iteration limit reached")
        self.iterations += 1

    async def dispatch(
        self, calls: Sequence[ToolCall], emit: Emit
    ) -> list[ToolCallResult]:
        """Run one round of tool calls, one result per call, in order."""

        self.start_round()
        results: list[ToolCallResult] = []
        for call in calls:
            await emit(ToolNameEvent(call_id=call.call_id, name=call.name))
            started = time.monotonic()
            result = await self._execute(call, emit)
            duration_ms = int((time.monotonic() - started) * 1000)
            results.append(result)

            if not result.ok:
                logger.warning(
                    "Tool %s failed (%s): %s", call.name, result.error_kind, result.detail
                )
            await emit(
                ToolResultEvent(
                    call_id=call.call_id,
                    name=call.name,
                    status="success" if result.ok else "error",
                    result=result.result if result.ok else result.detail,
                    error_kind=result.error_kind,
                )
            )
            if self._audit is not None:
                try:
                    await self._audit(call, result, duration_ms)
                except Exception:
                    logger.exception("Failed to record tool execution %s", call.call_id)
        return results

    async def _execute(self, call: ToolCall, emit: Emit) -> ToolCallResult:
        try:
            arguments = call.parsed_arguments()
        except ToolExecutionError as exc:
            await emit(ToolArgsEvent(call_id=call.call_id, args=call.arguments))
            return ToolCallResult(
                call.call_id, call.name, error_kind=exc.error_kind, detail=str(exc)
            )
        await emit(ToolArgsEvent(call_id=call.call_id, args=arguments))

        if self._executor is None:
            return ToolCallResult(
                call.call_id,
                call.name,
                error_kind="unknown_tool",
                detail=f"No tool executor is configured for {call.name}",
            )

        try:
            if self._tool_timeout is not None:
                value = await asyncio.wait_for(
                    self._executor.execute(call.name, arguments), self._tool_timeout
                )
            else:
                value = await self._executor.execute(call.name, arguments)
        except ToolExecutionError as exc:
            return ToolCallResult(
                call.call_id, call.name, error_kind=exc.error_kind, detail=str(exc)
            )
        except asyncio.TimeoutError:
            return ToolCallResult(
                call.call_id,
                call.name,
                error_kind="timeout",
                detail=f"Tool {call.name} did not finish in {self._tool_timeout}s",
            )
        except Exception as exc:
            logger.exception("Tool %s raised", call.name)
            return ToolCallResult(
                call.call_id, call.name, error_kind="internal_error", detail=str(exc)
            )
        return ToolCallResult(call.call_id, call.name, result=value)


__all__ = [
    "DEFAULT_TOOL_ITERATION_LIMIT",
    "ToolCall",
    "ToolCallResult",
    "ToolExecutor",
    "ToolInvocationLoop",
]
