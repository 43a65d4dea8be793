"""Tool executor backed by MCP servers reached over streamable HTTP."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from typing import Any, Iterable, Sequence

import httpx
from mcp.client.session import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CallToolResult, ListToolsResult, Tool

from ..errors import ToolExecutionError

logger = logging.getLogger(__name__)

# Connection timeout for HTTP MCP servers (seconds)
HTTP_CONNECTION_TIMEOUT = 30.0


class MCPToolClient:
    """Maintain a long-lived MCP session for one server."""

    def __init__(self, http_url: str, *, server_id: str | None = None):
        self._http_url = http_url
        self._server_id = server_id or http_url
        self._session: ClientSession | None = None
        self._tools: list[Tool] = []
        self._lock = asyncio.Lock()
        self._lifecycle_task: asyncio.Task | None = None
        self._close_event: asyncio.Event | None = None
        self._ready_event: asyncio.Event | None = None
        self._last_connection_error: BaseException | None = None

    @property
    def server_id(self) -> str:
        return self._server_id

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools)

    async def _run_lifecycle(self) -> None:
        """Own the MCP session lifetime in a single task."""

        exit_stack = AsyncExitStack()
        try:
            logger.info(
                "Connecting to HTTP MCP server at %s (id=%s)",
                self._http_url,
                self._server_id,
            )
            async with asyncio.timeout(HTTP_CONNECTION_TIMEOUT):
                read_stream, write_stream, _ = await exit_stack.enter_async_context(
                    streamablehttp_client(self._http_url)
                )
                session = ClientSession(read_stream, write_stream)
                await exit_stack.enter_async_context(session)
                await session.initialize()

            async with self._lock:
                self._session = session
                self._last_connection_error = None

            await self.refresh_tools()

            if self._ready_event is not None:
                self._ready_event.set()
            if self._close_event is not None:
                await self._close_event.wait()
        except asyncio.TimeoutError as exc:
            self._last_connection_error = exc
            logger.error(
                "Timeout connecting to HTTP MCP server '%s' after %ss",
                self._http_url,
                HTTP_CONNECTION_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            self._last_connection_error = exc
            logger.error(
                "Network error connecting to HTTP MCP server '%s': %s",
                self._http_url,
                exc,
            )
        except Exception as exc:  # noqa: BLE001
            self._last_connection_error = exc
            logger.error(
                "Unexpected error connecting to MCP server '%s': %s",
                self._server_id,
                exc,
            )
        finally:
            if self._ready_event is not None and not self._ready_event.is_set():
                self._ready_event.set()
            try:
                await asyncio.wait_for(exit_stack.aclose(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning(
                    "MCP session close timed out after 2s for server '%s'",
                    self._server_id,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Error closing MCP session for server '%s': %s",
                    self._server_id,
                    exc,
                )
            async with self._lock:
                self._session = None
                self._tools = []
                self._lifecycle_task = None
                self._close_event = None
                self._ready_event = None

    async def connect(self) -> None:
        """Open the session and cache the tool list."""

        async with self._lock:
            if self._session is not None:
                return
            if self._lifecycle_task is None or self._lifecycle_task.done():
                self._close_event = asyncio.Event()
                self._ready_event = asyncio.Event()
                self._lifecycle_task = asyncio.create_task(self._run_lifecycle())
            ready_event = self._ready_event

        assert ready_event is not None
        await ready_event.wait()

        if self._session is None:
            error = self._last_connection_error
            raise ConnectionError(
                f"Failed to connect to MCP server '{self._server_id}': {error}"
            ) from error

    async def close(self) -> None:
        async with self._lock:
            lifecycle = self._lifecycle_task
            close_event = self._close_event
        if lifecycle is None:
            return

        logger.info("Closing MCP session for server '%s'", self._server_id)
        if close_event is not None:
            close_event.set()
        try:
            await asyncio.wait_for(lifecycle, timeout=2.5)
        except asyncio.TimeoutError:
            logger.warning(
                "MCP session close timed out after 2.5s for server '%s'",
                self._server_id,
            )

    async def refresh_tools(self) -> None:
        """Fetch and cache the available tools from the MCP server."""

        if self._session is None:
            raise RuntimeError("MCP session has not been initialized")

        tools: list[Tool] = []
        cursor: str | None = None
        while True:
            result: ListToolsResult = await self._session.list_tools(cursor=cursor)
            tools.extend(result.tools)
            cursor = result.nextCursor
            if not cursor:
                break
        self._tools = tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        if self._session is None:
            raise RuntimeError("MCP session has not been initialized")
        return await self._session.call_tool(name, arguments)


def format_tool_result(result: CallToolResult) -> str:
    """Convert an MCP tool result into a plain-text string."""

    texts: list[str] = []
    for item in result.content:
        data = item.model_dump()
        if item.type == "text":
            value = data.get("text")
            if isinstance(value, str):
                texts.append(value)
        else:
            texts.append(json.dumps(data))
    if not texts and result.structuredContent:
        texts.append(json.dumps(result.structuredContent))
    return "\n".join(texts)


class MCPToolExecutor:
    """Route tool calls to whichever connected server exposes the tool."""

    def __init__(self, clients: Sequence[MCPToolClient] = ()):
        self._clients = list(clients)
        self._routes: dict[str, MCPToolClient] = {}

    @classmethod
    def from_urls(cls, urls: Iterable[str]) -> "MCPToolExecutor":
        return cls([MCPToolClient(url) for url in urls])

    async def initialize(self) -> None:
        for client in self._clients:
            try:
                await client.connect()
            except ConnectionError as exc:
                logger.warning("Skipping MCP server %s: %s", client.server_id, exc)
                continue
            for tool in client.tools:
                if tool.name in self._routes:
                    logger.warning(
                        "Tool %s from %s shadows an earlier server",
                        tool.name,
                        client.server_id,
                    )
                self._routes[tool.name] = client
        logger.info("MCP tool executor ready with %d tools", len(self._routes))

    async def aclose(self) -> None:
        for client in self._clients:
            await client.close()
        self._routes.clear()

    def tool_names(self) -> list[str]:
        return sorted(self._routes)

    def get_openai_tools(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Return function tool definitions in the responses API shape."""

        wanted = set(names) if names is not None else None
        formatted: list[dict[str, Any]] = []
        for name, client in sorted(self._routes.items()):
            if wanted is not None and name not in wanted:
                continue
            tool = next((item for item in client.tools if item.name == name), None)
            if tool is None:
                continue
            formatted.append(
                {
                    "type": "function",
                    "name": tool.name,
                    "description": tool.description or tool.title or "",
                    "parameters": tool.inputSchema
                    or {"type": "object", "properties": {}},
                }
            )
        return formatted

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        client = self._routes.get(name)
        if client is None:
            raise ToolExecutionError("unknown_tool", f"Unknown tool: {name}")

        logger.info("Calling MCP tool %s on %s", name, client.server_id)
        try:
            result = await client.call_tool(name, arguments)
        except (RuntimeError, httpx.HTTPError) as exc:
            raise ToolExecutionError("internal_error", str(exc)) from exc

        text = format_tool_result(result)
        if result.isError:
            raise ToolExecutionError("tool_error", text or f"Tool {name} failed")
        return text


__all__ = ["MCPToolClient", "MCPToolExecutor", "format_tool_result"]
