"""Client for the external knowledge similarity search."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KnowledgeChunk:
    chunk_id: str
    content: str
    similarity: float
    document_id: str | None = None


class KnowledgeRetriever(Protocol):
    async def query(
        self, text: str, top_k: int, threshold: float, agent_id: str
    ) -> list[KnowledgeChunk]:
        ...


def rank_chunks(
    chunks: Sequence[KnowledgeChunk], top_k: int, threshold: float
) -> list[KnowledgeChunk]:
    """Keep chunks above the threshold, best first, ties in arrival order."""

    indexed = [
        (position, chunk)
        for position, chunk in enumerate(chunks)
        if chunk.similarity >= threshold and chunk.content.strip()
    ]
    indexed.sort(key=lambda item: (-item[1].similarity, item[0]))
    return [chunk for _, chunk in indexed[:top_k]]


def _parse_chunk(item: Any) -> KnowledgeChunk | None:
    if not isinstance(item, dict):
        return None
    content = item.get("content")
    similarity = item.get("similarity")
    if not isinstance(content, str) or not isinstance(similarity, (int, float)):
        return None
    chunk_id = item.get("chunkId") or item.get("chunk_id") or item.get("id") or ""
    document_id = item.get("documentId") or item.get("document_id")
    return KnowledgeChunk(
        chunk_id=str(chunk_id),
        content=content,
        similarity=float(similarity),
        document_id=str(document_id) if document_id is not None else None,
    )


class HttpKnowledgeRetriever:
    """Query a similarity search endpoint over HTTP.

    Any failure yields an empty result; callers never see an exception.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._settings.retrieval_url is not None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.retrieval_timeout_seconds)
            )
        return self._client

    async def query(
        self, text: str, top_k: int, threshold: float, agent_id: str
    ) -> list[KnowledgeChunk]:
        if self._settings.retrieval_url is None:
            return []

        headers = {"Accept": "application/json"}
        if self._settings.retrieval_api_key is not None:
            headers["Authorization"] = (
                f"Bearer {self._settings.retrieval_api_key.get_secret_value()}"
            )
        payload = {
            "query": text,
            "top_k": top_k,
            "threshold": threshold,
            "agent_id": agent_id,
        }
        try:
            response = await self._get_client().post(
                str(self._settings.retrieval_url), json=payload, headers=headers
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Knowledge retrieval failed for agent %s: %s", agent_id, exc)
            return []

        items = body.get("chunks", body) if isinstance(body, dict) else body
        if not isinstance(items, list):
            logger.warning("Knowledge retrieval returned unexpected payload")
            return []
        chunks = [chunk for chunk in map(_parse_chunk, items) if chunk is not None]
        return rank_chunks(chunks, top_k, threshold)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["HttpKnowledgeRetriever", "KnowledgeChunk", "KnowledgeRetriever", "rank_chunks"]
