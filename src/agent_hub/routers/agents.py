"""API routes listing configured agents."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from ..chat.orchestrator import ChatOrchestrator
from ..schemas.agents import AgentSummary
from .chat import get_chat_orchestrator

router = APIRouter(prefix="/api/agents", tags=["agents"])


@router.get("", response_model=List[AgentSummary])
async def list_agents(
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> List[AgentSummary]:
    return await orchestrator.list_agents()


__all__ = ["router"]
