"""Streaming HTTP client for the hosted model provider."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable, Mapping, Optional, Sequence

import httpx
from fastapi import status

from .config import Settings
from .errors import UpstreamModelError

logger = logging.getLogger(__name__)

_ASSISTANTS_BETA = "assistants=v2"


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None

    def asdict(self) -> dict[str, Optional[str]]:
        payload: dict[str, Optional[str]] = {"event": self.event, "data": self.data}
        if self.event_id is not None:
            payload["id"] = self.event_id
        return payload

    def json(self) -> dict[str, Any] | None:
        """Decode the data field, returning None for sentinels and junk."""

        if not self.data or self.data == "[DONE]":
            return None
        try:
            decoded = json.loads(self.data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable SSE payload: %.200s", self.data)
            return None
        return decoded if isinstance(decoded, dict) else None


class OpenAIClient:
    """Client for the responses, threads and images endpoints."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(self, settings: Settings):
        self._settings = settings

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _json_headers(self, *, beta: bool = False) -> dict[str, str]:
        headers = dict(self._headers)
        headers["Accept"] = "application/json"
        if beta:
            headers["OpenAI-Beta"] = _ASSISTANTS_BETA
        return headers

    @property
    def _base_url(self) -> str:
        """Return the API base URL without a trailing slash."""

        return str(self._settings.openai_base_url).rstrip("/")

    # ------------------------------------------------------------------
    # Streaming endpoints
    # ------------------------------------------------------------------
    async def stream_response(
        self, payload: dict[str, Any]
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """Stream a stateless `/responses` call."""

        body = dict(payload)
        body["stream"] = True
        async for event in self._stream("/responses", json_body=body):
            yield event

    async def stream_run(
        self, thread_id: str, payload: dict[str, Any]
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """Start a run on a persistent thread and stream its events."""

        body = dict(payload)
        body["stream"] = True
        async for event in self._stream(
            f"/threads/{thread_id}/runs", json_body=body, beta=True
        ):
            yield event

    async def stream_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        tool_outputs: list[dict[str, Any]],
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """Resume a thread run that is waiting on tool results."""

        body = {"tool_outputs": tool_outputs, "stream": True}
        async for event in self._stream(
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            json_body=body,
            beta=True,
        ):
            yield event

    async def stream_image(
        self,
        payload: dict[str, Any],
        *,
        edit_image: tuple[str, bytes, str] | None = None,
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """Stream progressive image generation (or edit when a file is given)."""

        if edit_image is None:
            async for event in self._stream(
                "/images/generations", json_body={**payload, "stream": True}
            ):
                yield event
            return

        form = {key: _form_value(value) for key, value in payload.items()}
        form["stream"] = "true"
        async for event in self._stream(
            "/images/edits", form=form, files={"image": edit_image}
        ):
            yield event

    async def _stream(
        self,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        form: dict[str, str] | None = None,
        files: dict[str, tuple[str, bytes, str]] | None = None,
        beta: bool = False,
    ) -> AsyncGenerator[ServerSentEvent, None]:
        url = f"{self._base_url}{path}"
        headers = dict(self._headers)
        if beta:
            headers["OpenAI-Beta"] = _ASSISTANTS_BETA
        if files is not None:
            # httpx sets the multipart boundary itself.
            headers.pop("Content-Type", None)

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=headers,
                json=json_body,
                data=form,
                files=files,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = self._extract_error_detail(body)
                    raise UpstreamModelError(response.status_code, detail)

                async for event in self._iter_events(response):
                    yield event
        except httpx.HTTPError as exc:
            raise UpstreamModelError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    # ------------------------------------------------------------------
    # JSON endpoints
    # ------------------------------------------------------------------
    async def create_thread(self) -> str:
        body = await self._post_json("/threads", {}, beta=True)
        thread_id = body.get("id")
        if not isinstance(thread_id, str) or not thread_id:
            raise UpstreamModelError(
                status.HTTP_502_BAD_GATEWAY, "Thread creation returned no id"
            )
        return thread_id

    async def add_thread_message(
        self,
        thread_id: str,
        content: str | list[dict[str, Any]],
        *,
        file_ids: Sequence[str] = (),
    ) -> str | None:
        body: dict[str, Any] = {"role": "user", "content": content}
        if file_ids:
            body["attachments"] = [
                {"file_id": file_id, "tools": [{"type": "file_search"}]}
                for file_id in file_ids
            ]
        response = await self._post_json(
            f"/threads/{thread_id}/messages", body, beta=True
        )
        message_id = response.get("id")
        return message_id if isinstance(message_id, str) else None

    async def generate_image(
        self,
        payload: dict[str, Any],
        *,
        edit_image: tuple[str, bytes, str] | None = None,
    ) -> dict[str, Any]:
        """Request a single image without progressive frames."""

        if edit_image is None:
            return await self._post_json("/images/generations", payload)

        url = f"{self._base_url}/images/edits"
        headers = self._json_headers()
        headers.pop("Content-Type", None)
        form = {key: _form_value(value) for key, value in payload.items()}

        client = await self._get_http_client()
        try:
            response = await client.post(
                url, headers=headers, data=form, files={"image": edit_image}
            )
        except httpx.HTTPError as exc:
            raise UpstreamModelError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc
        return self._decode_json_response(response)

    async def fetch_bytes(self, url: str) -> tuple[bytes, str]:
        """Download a previously stored asset, returning bytes and content type."""

        client = await self._get_http_client()
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            raise UpstreamModelError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc
        if response.status_code >= 400:
            raise UpstreamModelError(
                response.status_code, f"Failed to fetch reference image: {url}"
            )
        content_type = response.headers.get("content-type", "image/png")
        return response.content, content_type.split(";", 1)[0].strip()

    async def _post_json(
        self, path: str, payload: dict[str, Any], *, beta: bool = False
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        client = await self._get_http_client()
        try:
            response = await client.post(
                url, headers=self._json_headers(beta=beta), json=payload
            )
        except httpx.HTTPError as exc:
            raise UpstreamModelError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc
        return self._decode_json_response(response)

    def _decode_json_response(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise UpstreamModelError(response.status_code, detail)
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamModelError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc
        if not isinstance(body, dict):
            raise UpstreamModelError(
                status.HTTP_502_BAD_GATEWAY, "Unexpected response payload"
            )
        return body

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as exc:
                logger.debug("Failed to close pooled client: %s", exc)

    # ------------------------------------------------------------------
    # SSE parsing
    # ------------------------------------------------------------------
    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field == "event":
                event_name = value or None
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "The model provider returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, Mapping) and error.get("message"):
                return error["message"]
            return error or payload
        return payload


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


__all__ = ["OpenAIClient", "ServerSentEvent"]
