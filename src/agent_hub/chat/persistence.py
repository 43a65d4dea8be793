"""Durable writes for a chat turn: session, user message, outcome, tool audit."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..errors import UnknownSession
from ..repository import ChatRepository, MessageRecord, SchemaCapabilities
from .tooling import ToolCall, ToolCallResult

logger = logging.getLogger(__name__)


@dataclass
class TurnRecord:
    """What has been committed for the current turn."""

    session_id: str
    user_message_id: int
    created_session: bool = False
    thread_id: str | None = None
    outcome_message_id: int | None = None

    @property
    def finished(self) -> bool:
        return self.outcome_message_id is not None


class PersistenceWriter:
    """Write exactly one user and one assistant-or-error message per turn."""

    def __init__(self, repository: ChatRepository):
        self._repo = repository

    @property
    def capabilities(self) -> SchemaCapabilities:
        return self._repo.capabilities

    async def resolve_session(self, session_id: str) -> dict[str, Any]:
        session = await self._repo.get_session(session_id)
        if session is None:
            raise UnknownSession(f"Unknown session: {session_id}")
        return session

    async def history(self, session_id: str, limit: int | None = None) -> list[MessageRecord]:
        return await self._repo.get_messages(session_id, limit=limit)

    async def open_turn(
        self,
        *,
        agent_id: str,
        text: str,
        session_id: str | None = None,
        conversation_key: str | None = None,
        user_id: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
        title: str | None = None,
    ) -> TurnRecord:
        """Create the session when needed and commit the user message."""

        created = False
        thread_id: str | None = None
        if session_id is None:
            session_id, created = await self._repo.create_session(
                agent_id,
                user_id=user_id,
                conversation_key=conversation_key,
                title=title,
            )
            if created:
                logger.info("Created chat session %s for agent %s", session_id, agent_id)
            else:
                logger.info(
                    "Reusing session %s for conversation %s", session_id, conversation_key
                )
        if not created:
            session = await self.resolve_session(session_id)
            thread_id = session.get("thread_id")

        message_id = await self._repo.add_message(
            session_id, "user", text, attachments=attachments or None
        )
        return TurnRecord(
            session_id=session_id,
            user_message_id=message_id,
            created_session=created,
            thread_id=thread_id,
        )

    async def bind_thread(
        self, turn: TurnRecord, create: Callable[[], Awaitable[str]]
    ) -> str:
        """Return the session's thread, creating it only once."""

        if turn.thread_id:
            return turn.thread_id
        session = await self.resolve_session(turn.session_id)
        if session.get("thread_id"):
            turn.thread_id = session["thread_id"]
            return turn.thread_id
        created = await create()
        turn.thread_id = await self._repo.set_thread_id(turn.session_id, created)
        if turn.thread_id != created:
            logger.info(
                "Session %s already bound to thread %s; discarding %s",
                turn.session_id,
                turn.thread_id,
                created,
            )
        return turn.thread_id

    async def write_assistant(
        self,
        turn: TurnRecord,
        content: str,
        *,
        model: str | None,
        truncated: bool = False,
        attachments: list[dict[str, Any]] | None = None,
        tool_calls: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        return await self._write_outcome(
            turn,
            "assistant",
            content,
            model=model,
            truncated=truncated,
            attachments=attachments,
            tool_calls=tool_calls,
            metadata=metadata,
        )

    async def write_error(
        self,
        turn: TurnRecord,
        content: str,
        *,
        model: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        return await self._write_outcome(
            turn, "error", content, model=model, metadata=metadata
        )

    async def _write_outcome(
        self, turn: TurnRecord, role: str, content: str, **fields: Any
    ) -> int:
        if turn.finished:
            raise RuntimeError(
                f"Turn for message {turn.user_message_id} already has an outcome"
            )
        message_id = await self._repo.add_message(turn.session_id, role, content, **fields)
        turn.outcome_message_id = message_id
        await self._repo.touch_session(turn.session_id)
        return message_id

    async def record_tool(
        self,
        turn: TurnRecord,
        call: ToolCall,
        result: ToolCallResult,
        duration_ms: int,
    ) -> None:
        await self._repo.add_tool_execution(
            turn.session_id,
            tool_name=call.name,
            call_id=call.call_id,
            arguments=call.arguments,
            result=result.result if result.ok else result.detail,
            error_kind=result.error_kind,
            duration_ms=duration_ms,
            turn_message_id=turn.user_message_id,
        )


__all__ = ["PersistenceWriter", "TurnRecord"]
