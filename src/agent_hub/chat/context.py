"""Build model input from history, agent configuration and retrieved knowledge."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Mapping, Sequence
from urllib.parse import urlparse

from ..errors import EmptyContent, EmptyTurn
from ..schemas.agents import AgentConfig
from ..schemas.chat import TurnAttachment, TurnMessage
from ..services.retrieval import KnowledgeChunk, KnowledgeRetriever, rank_chunks

logger = logging.getLogger(__name__)

_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}
_REPLAYED_ROLES = {"user", "assistant"}


@dataclass
class AssembledInput:
    """Everything the backends need to issue one model call."""

    instructions: str
    turn_text: str
    history: list[dict[str, Any]] = field(default_factory=list)
    turn_content: list[dict[str, Any]] = field(default_factory=list)
    knowledge: list[KnowledgeChunk] = field(default_factory=list)
    supplementary_instructions: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)

    @property
    def knowledge_block(self) -> str | None:
        if not self.knowledge:
            return None
        lines = ["Relevant knowledge base excerpts:"]
        for position, chunk in enumerate(self.knowledge, start=1):
            lines.append(f"[{position}] (similarity {chunk.similarity:.2f})")
            lines.append(chunk.content.strip())
        return "\n".join(lines)

    def responses_input(self) -> list[dict[str, Any]]:
        """Input items for a stateless call: history, knowledge, then the turn."""

        items = [dict(item) for item in self.history]
        block = self.knowledge_block
        if block:
            items.append({"role": "developer", "content": block})
        items.append({"role": "user", "content": list(self.turn_content)})
        return items

    def thread_instructions(self) -> str | None:
        """Per-run instructions for a persistent thread."""

        parts = [
            part
            for part in (self.supplementary_instructions, self.knowledge_block)
            if part
        ]
        return "\n\n".join(parts) or None

    def thread_content(self) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = []
        for part in self.turn_content:
            kind = part.get("type")
            if kind == "input_text":
                content.append({"type": "text", "text": part["text"]})
            elif kind == "input_image":
                content.append(
                    {"type": "image_url", "image_url": {"url": part["image_url"]}}
                )
            elif kind == "input_file" and part.get("file_url"):
                content.append(
                    {"type": "text", "text": f"Attached document: {part['file_url']}"}
                )
        return content

    def thread_file_ids(self) -> list[str]:
        return [
            part["file_id"]
            for part in self.turn_content
            if part.get("type") == "input_file" and part.get("file_id")
        ]


_MODE_INSTRUCTIONS = {
    "prompt": (
        "# MODE: PROMPT-ONLY\n"
        "Do not call tools. Answer from your background knowledge and the "
        "context provided in this conversation."
    ),
    "tools": (
        "# MODE: TOOLS\n"
        "Prefer calling tools for actions and data lookup: current information, "
        "requests that change something, and searches of documentation. After a "
        "tool returns, explain its result to the user."
    ),
    "hybrid": (
        "# MODE: HYBRID\n"
        "Answer general questions from your own knowledge and call tools when "
        "you need current data, need to act, or need specific documentation."
    ),
}

TITLE_MAX_LENGTH = 60


def agent_instructions(agent: AgentConfig) -> str:
    """System instructions for a stateless call, composed from the agent profile."""

    if agent.department:
        identity = f"You are {agent.name}, an AI assistant specializing in {agent.department}."
    else:
        identity = f"You are {agent.name}, an AI assistant."
    parts = [" ".join(part for part in (identity, agent.system_prompt.strip()) if part)]
    parts.append(_MODE_INSTRUCTIONS.get(agent.mode, _MODE_INSTRUCTIONS["hybrid"]))
    if agent.background_instructions:
        parts.append(f"Background Context: {agent.background_instructions.strip()}")
    return "\n\n".join(parts)


def conversation_title(agent: AgentConfig, text: str) -> str:
    """Fallback session title: the first line of the opening message."""

    first_line = " ".join(text.strip().splitlines()[0].split()) if text.strip() else ""
    if len(first_line) > TITLE_MAX_LENGTH:
        first_line = first_line[: TITLE_MAX_LENGTH - 1].rstrip() + "…"
    prefix = agent.department or agent.name
    if not first_line:
        return f"{prefix} chat"
    return f"{prefix}: {first_line}"


def validate_turn(messages: Sequence[TurnMessage]) -> TurnMessage:
    """Return the newest message, rejecting empty turns."""

    if not messages:
        raise EmptyTurn()
    latest = messages[-1]
    if not latest.text:
        raise EmptyContent()
    return latest


def is_image_attachment(attachment: TurnAttachment) -> bool:
    if attachment.type is not None:
        return attachment.type == "image"
    if attachment.mime_type:
        return attachment.mime_type.lower().startswith("image/")
    reference = attachment.url or attachment.storage_path or attachment.name or ""
    suffix = PurePosixPath(urlparse(reference).path).suffix.lower()
    return suffix in _IMAGE_EXTENSIONS


def attachment_part(attachment: TurnAttachment) -> dict[str, Any] | None:
    """Reference an attachment by provider file handle or URL."""

    if is_image_attachment(attachment):
        if not attachment.url:
            return None
        return {"type": "input_image", "image_url": attachment.url}
    if attachment.provider_file_id:
        return {"type": "input_file", "file_id": attachment.provider_file_id}
    if attachment.url:
        return {"type": "input_file", "file_url": attachment.url}
    return None


def _history_items(
    history: Sequence[Mapping[str, Any]], limit: int
) -> list[dict[str, Any]]:
    replayable = [
        {"role": item["role"], "content": item["content"]}
        for item in history
        if item.get("role") in _REPLAYED_ROLES
        and isinstance(item.get("content"), str)
        and item["content"].strip()
    ]
    if limit <= 0:
        return []
    return replayable[-limit:]


class ContextAssembler:
    """Produce the ordered model input for one turn."""

    def __init__(
        self,
        retriever: KnowledgeRetriever | None = None,
        *,
        top_k: int = 5,
        threshold: float = 0.5,
        history_limit: int = 10,
    ) -> None:
        self._retriever = retriever
        self._top_k = top_k
        self._threshold = threshold
        self._history_limit = history_limit

    async def assemble(
        self,
        agent: AgentConfig,
        history: Sequence[Mapping[str, Any]],
        turn: TurnMessage,
    ) -> AssembledInput:
        text = turn.text
        if not text:
            raise EmptyContent()

        content: list[dict[str, Any]] = [{"type": "input_text", "text": text}]
        stored: list[dict[str, Any]] = []
        for attachment in turn.attachments:
            part = attachment_part(attachment)
            if part is None:
                logger.warning(
                    "Skipping attachment %s without a usable reference",
                    attachment.name or attachment.storage_path,
                )
                continue
            content.append(part)
            stored.append(
                attachment.model_dump(exclude_none=True)
                | {"type": "image" if part["type"] == "input_image" else "file"}
            )

        knowledge: list[KnowledgeChunk] = []
        if agent.knowledge_base and self._retriever is not None:
            knowledge = await self._retrieve(text, agent.id)

        return AssembledInput(
            instructions=agent_instructions(agent),
            turn_text=text,
            history=_history_items(history, self._history_limit),
            turn_content=content,
            knowledge=knowledge,
            supplementary_instructions=agent.background_instructions or None,
            attachments=stored,
        )

    async def _retrieve(self, text: str, agent_id: str) -> list[KnowledgeChunk]:
        assert self._retriever is not None
        try:
            chunks = await self._retriever.query(
                text, self._top_k, self._threshold, agent_id
            )
        except Exception as exc:  # retrieval must never abort the turn
            logger.warning("Knowledge retrieval raised for agent %s: %s", agent_id, exc)
            return []
        return rank_chunks(chunks, self._top_k, self._threshold)


__all__ = [
    "AssembledInput",
    "ContextAssembler",
    "agent_instructions",
    "attachment_part",
    "conversation_title",
    "is_image_attachment",
    "validate_turn",
]
