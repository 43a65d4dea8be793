"""Chat streaming API routes."""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sse_starlette.sse import EventSourceResponse

from ..chat.events import SseEvent
from ..chat.orchestrator import ChatOrchestrator
from ..chat.session import StreamingSession
from ..errors import ChatError
from ..schemas.chat import ChatTurnRequest, SessionSummary, StoredMessage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


def get_chat_orchestrator(request: Request) -> ChatOrchestrator:
    orchestrator = getattr(request.app.state, "chat_orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("Chat orchestrator is not configured")
    return orchestrator


async def _publish(session: StreamingSession) -> AsyncGenerator[SseEvent, None]:
    async for event in session.events():
        yield event.to_sse()


@router.post("/stream", response_model=None, status_code=200)
async def stream_chat_turn(
    payload: ChatTurnRequest,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> EventSourceResponse:
    """Stream one chat turn through Server-Sent Events."""

    try:
        session = await orchestrator.prepare_turn(payload)
    except ChatError as exc:
        logger.info("Rejected chat turn (%s): %s", exc.kind, exc.detail)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return EventSourceResponse(_publish(session))


@router.get("/sessions", response_model=list[SessionSummary])
async def list_sessions(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=50, ge=1, le=50),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> list[dict[str, Any]]:
    """Recent sessions, newest activity first."""

    return await orchestrator.list_sessions(user_id, limit=limit)


@router.get("/sessions/{session_id}/messages", response_model=list[StoredMessage])
async def list_session_messages(
    session_id: str,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> list[dict[str, Any]]:
    try:
        return await orchestrator.get_messages(session_id)
    except ChatError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


__all__ = ["get_chat_orchestrator", "router"]
