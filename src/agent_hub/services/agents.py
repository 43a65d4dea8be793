"""Service loading agent personas from a JSON file."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List

from pydantic import ValidationError

from ..schemas.agents import AgentConfig, AgentSummary

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Read-only registry of configured agents."""

    def __init__(
        self,
        path: Path | None = None,
        *,
        agents: Iterable[AgentConfig] | None = None,
    ) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._agents: Dict[str, AgentConfig] = {}
        if agents is not None:
            self._agents = {agent.id: agent for agent in agents}
        else:
            self._load_from_disk()

    def _load_from_disk(self) -> None:
        """Load agents from disk, tolerating a bare list or an `agents` key."""
        if self._path is None or not self._path.exists():
            logger.warning("Agents file %s not found; no agents loaded", self._path)
            self._agents = {}
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read agents file %s: %s", self._path, exc)
            self._agents = {}
            return

        if isinstance(raw, dict):
            items = raw.get("agents", [])
        elif isinstance(raw, list):
            items = raw
        else:
            items = []

        loaded: Dict[str, AgentConfig] = {}
        for item in items:
            try:
                agent = AgentConfig.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid agent entry: %s", exc)
                continue
            loaded[agent.id] = agent

        logger.info("Loaded %d agents from %s", len(loaded), self._path)
        self._agents = loaded

    async def reload(self) -> None:
        async with self._lock:
            self._load_from_disk()

    async def get(self, agent_id: str) -> AgentConfig | None:
        async with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent is not None else None

    async def list_active(self) -> List[AgentSummary]:
        async with self._lock:
            items = [
                AgentSummary(
                    id=agent.id,
                    name=agent.name,
                    department=agent.department,
                    mode=agent.mode,
                )
                for agent in self._agents.values()
                if agent.is_active
            ]
        items.sort(key=lambda item: ((item.department or "").lower(), item.name.lower()))
        return items


__all__ = ["AgentRegistry"]
