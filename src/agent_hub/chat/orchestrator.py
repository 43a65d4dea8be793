"""Chat orchestrator coordinating routing, context assembly and streaming turns."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from ..config import PROJECT_ROOT
from ..errors import UnknownAgent
from ..openai_client import OpenAIClient
from ..repository import ChatRepository, MessageRecord
from ..schemas.agents import AgentConfig, AgentSummary
from ..schemas.chat import ChatTurnRequest, TurnAttachment, TurnMessage
from ..services.agents import AgentRegistry
from ..services.retrieval import HttpKnowledgeRetriever, KnowledgeRetriever
from ..services.storage import GCSObjectStore, ObjectStore
from .backends import ModelConversation, ResponsesConversation, ThreadConversation
from .context import (
    AssembledInput,
    ContextAssembler,
    conversation_title,
    is_image_attachment,
    validate_turn,
)
from .events import EffortCoerced, SessionStarted, StreamEvent
from .images import ImageGenerationFlow, ImageRequest, detect_edit_intent, detect_image_intent
from .mcp_client import MCPToolExecutor
from .persistence import PersistenceWriter, TurnRecord
from .policies import RequestRouter, RoutingDecision, normalize_tools
from .session import StreamingSession, TurnClock, TurnPlan
from .tooling import ToolExecutor, ToolInvocationLoop

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


def _resolve_path(path: Path) -> Path:
    return path if path.is_absolute() else PROJECT_ROOT / path


def _client_history(messages: Sequence[TurnMessage]) -> list[dict[str, Any]]:
    """History carried by the client for a conversation not yet stored."""

    history: list[dict[str, Any]] = []
    for message in messages:
        text = message.text
        if not text or message.role == "system":
            continue
        history.append(
            {
                "role": message.role,
                "content": text,
                "attachments": [
                    attachment.model_dump(exclude_none=True)
                    for attachment in message.attachments
                ],
            }
        )
    return history


class ChatOrchestrator:
    """High-level coordination for chat turns."""

    def __init__(
        self,
        settings: Settings,
        *,
        repository: ChatRepository | None = None,
        client: OpenAIClient | None = None,
        agents: AgentRegistry | None = None,
        retriever: KnowledgeRetriever | None = None,
        tool_executor: ToolExecutor | None = None,
        object_store: ObjectStore | None = None,
    ):
        self._settings = settings
        self._repo = repository or ChatRepository(
            _resolve_path(settings.chat_database_path)
        )
        self._client = client or OpenAIClient(settings)
        self._agents = agents or AgentRegistry(_resolve_path(settings.agents_path))

        if retriever is None and settings.retrieval_url is not None:
            retriever = HttpKnowledgeRetriever(settings)
        self._retriever = retriever

        if tool_executor is None and settings.mcp_server_urls:
            tool_executor = MCPToolExecutor.from_urls(settings.mcp_server_urls)
        self._tools = tool_executor

        if object_store is None:
            gcs = GCSObjectStore(settings)
            if gcs.is_available():
                object_store = gcs
            else:
                logger.warning("GCS credentials missing; image generation is disabled")
        self._store = object_store

        self._writer = PersistenceWriter(self._repo)
        self._router = RequestRouter(
            default_model=settings.default_model,
            default_effort=settings.default_reasoning_effort,
            policy=settings.effort_policy,
        )
        self._assembler = ContextAssembler(
            retriever,
            top_k=settings.retrieval_top_k,
            threshold=settings.retrieval_threshold,
            history_limit=settings.history_limit,
        )
        self._image_flow: ImageGenerationFlow | None = None
        if object_store is not None and settings.image_models:
            self._image_flow = ImageGenerationFlow(
                self._client,
                object_store,
                models=settings.image_models,
                partial_frames=settings.image_partial_frames,
                url_ttl=settings.image_url_ttl,
            )
        self._init_lock = asyncio.Lock()
        self._ready = asyncio.Event()

    async def initialize(self) -> None:
        """Initialize the database and tool servers once."""

        async with self._init_lock:
            if self._ready.is_set():
                return
            await self._repo.initialize()
            if isinstance(self._tools, MCPToolExecutor):
                await self._tools.initialize()
            self._ready.set()
            capabilities = self._repo.capabilities
            logger.info(
                "Chat orchestrator ready (attachments=%s, tool_calls=%s, truncated=%s, titles=%s)",
                capabilities.attachments,
                capabilities.tool_calls,
                capabilities.truncated,
                capabilities.titles,
            )

    async def shutdown(self) -> None:
        """Clean up held resources."""

        try:
            await asyncio.wait_for(self._client.aclose(), timeout=2.0)
        except (asyncio.TimeoutError, Exception) as exc:
            logger.warning("Error closing model client: %s", exc)

        if isinstance(self._tools, MCPToolExecutor):
            try:
                await asyncio.wait_for(self._tools.aclose(), timeout=5.0)
            except (asyncio.TimeoutError, Exception) as exc:
                logger.warning("Error closing MCP clients: %s", exc)

        if isinstance(self._retriever, HttpKnowledgeRetriever):
            try:
                await asyncio.wait_for(self._retriever.aclose(), timeout=2.0)
            except (asyncio.TimeoutError, Exception) as exc:
                logger.warning("Error closing retrieval client: %s", exc)

        try:
            await asyncio.wait_for(self._repo.close(), timeout=2.0)
        except (asyncio.TimeoutError, Exception) as exc:
            logger.warning("Error closing repository: %s", exc)

        self._ready.clear()

    @property
    def repository(self) -> ChatRepository:
        return self._repo

    async def list_agents(self) -> list[AgentSummary]:
        return await self._agents.list_active()

    async def list_sessions(
        self, user_id: str | None = None, *, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Most recently active sessions, labelled with their agent."""

        await self._ready.wait()
        sessions = await self._repo.list_sessions(user_id=user_id, limit=limit)
        for session in sessions:
            agent = await self._agents.get(session["agent_id"])
            session["agent_name"] = agent.name if agent else None
            session["agent_department"] = agent.department if agent else None
        return sessions

    async def get_messages(self, session_id: str) -> list[MessageRecord]:
        await self._ready.wait()
        await self._writer.resolve_session(session_id)
        return await self._writer.history(session_id)

    async def prepare_turn(self, request: ChatTurnRequest) -> StreamingSession:
        """Validate and route a turn, commit the user message, return its stream.

        Every failure raised here happens before anything is written, so a
        rejected request leaves no session or message behind.
        """

        await self._ready.wait()
        clock = TurnClock(self._settings.turn_deadline_seconds)

        latest = validate_turn(request.messages)
        agent = await self._agents.get(request.agent_id)
        if agent is None or not agent.is_active:
            raise UnknownAgent(f"Unknown agent: {request.agent_id}")

        decision = self._router.route(
            agent,
            model=request.model,
            effort=request.reasoning_effort,
            tools=request.requested_tools,
        )

        session_id: str | None = None
        if request.is_new_conversation:
            history = _client_history(request.messages[:-1])
        else:
            assert request.session_id is not None
            session = await self._writer.resolve_session(request.session_id)
            session_id = session["session_id"]
            history = await self._writer.history(
                session_id, limit=max(self._settings.history_limit * 2, 1)
            )

        latest = await self._sign_attachments(latest)
        assembled = await self._assembler.assemble(agent, history, latest)
        reference_url = await self._reference_image(latest, history)
        image_request = self._fast_path_request(agent, decision, latest, reference_url)

        turn = await self._writer.open_turn(
            agent_id=agent.id,
            text=assembled.turn_text,
            session_id=session_id,
            conversation_key=request.conversation_key,
            user_id=request.user_id,
            attachments=assembled.attachments,
            title=conversation_title(agent, assembled.turn_text),
        )

        conversation: ModelConversation | None = None
        if image_request is None:
            conversation = self._conversation_for(decision, assembled, turn)

        leading: list[StreamEvent] = []
        if turn.created_session:
            leading.append(SessionStarted(session_id=turn.session_id))
        if decision.coerced and decision.effort:
            leading.append(
                EffortCoerced(
                    requested=decision.requested_effort or "",
                    effort=decision.effort,
                    tools=list(decision.tools),
                )
            )

        plan = TurnPlan(
            turn=turn,
            model=decision.model,
            conversation=conversation,
            image_request=image_request,
            leading_events=leading,
            reference_image_url=reference_url,
        )
        tool_loop = ToolInvocationLoop(
            self._tools,
            max_iterations=self._settings.tool_iteration_limit,
            tool_timeout=self._settings.tool_timeout_seconds,
            audit=partial(self._writer.record_tool, turn),
        )
        logger.info(
            "Starting turn in session %s (agent=%s, strategy=%s, model=%s, image=%s)",
            turn.session_id,
            agent.id,
            decision.strategy,
            decision.model,
            image_request is not None,
        )
        return StreamingSession(
            plan,
            writer=self._writer,
            tool_loop=tool_loop,
            image_flow=self._image_flow,
            clock=clock,
            heartbeat_interval=self._settings.heartbeat_interval_seconds,
        )

    def _conversation_for(
        self, decision: RoutingDecision, assembled: AssembledInput, turn: TurnRecord
    ) -> ModelConversation:
        if decision.strategy == "persistent-thread":
            return ThreadConversation(
                self._client,
                decision,
                assembled,
                resolve_thread=partial(
                    self._writer.bind_thread, turn, self._client.create_thread
                ),
            )
        function_tools: list[dict[str, Any]] = []
        if self._tools is not None and decision.function_tools:
            function_tools = self._tools.get_openai_tools(decision.function_tools)
        return ResponsesConversation(
            self._client, decision, assembled, function_tools=function_tools
        )

    def _fast_path_request(
        self,
        agent: AgentConfig,
        decision: RoutingDecision,
        turn: TurnMessage,
        reference_url: str | None,
    ) -> ImageRequest | None:
        """Skip the model when the turn plainly asks for a picture."""

        if self._image_flow is None or decision.strategy != "stateless-completion":
            return None
        if agent.mode == "tools":
            return None
        allowed = "image_generation" in decision.tools or (
            "image_generation" in normalize_tools(agent.allowed_tools)
        )
        if not allowed or not detect_image_intent(turn.text):
            return None
        edit = reference_url is not None and detect_edit_intent(turn.text)
        return ImageRequest(
            prompt=turn.text,
            reference_url=reference_url if edit else None,
        )

    async def _sign_attachments(self, message: TurnMessage) -> TurnMessage:
        """Give stored attachments without a URL a fresh signed one."""

        if self._store is None:
            return message
        signed: list[TurnAttachment] = []
        changed = False
        for attachment in message.attachments:
            if attachment.storage_path and not attachment.url:
                try:
                    url = await self._store.signed_url(
                        attachment.storage_path, self._settings.image_url_ttl
                    )
                except Exception as exc:
                    logger.warning(
                        "Could not sign attachment %s: %s", attachment.storage_path, exc
                    )
                else:
                    attachment = attachment.model_copy(update={"url": url})
                    changed = True
            signed.append(attachment)
        if not changed:
            return message
        return message.model_copy(update={"attachments": signed})

    async def _reference_image(
        self, turn: TurnMessage, history: Sequence[Mapping[str, Any]]
    ) -> str | None:
        """Newest image in the turn, else the newest one stored in history."""

        for attachment in reversed(turn.attachments):
            if is_image_attachment(attachment) and attachment.url:
                return attachment.url

        for message in reversed(history):
            for raw in reversed(message.get("attachments") or []):
                if not isinstance(raw, dict):
                    continue
                attachment = TurnAttachment.model_validate(raw)
                if not is_image_attachment(attachment):
                    continue
                if attachment.storage_path and self._store is not None:
                    try:
                        return await self._store.signed_url(
                            attachment.storage_path, self._settings.image_url_ttl
                        )
                    except Exception as exc:
                        logger.warning(
                            "Could not re-sign %s: %s", attachment.storage_path, exc
                        )
                if attachment.url:
                    return attachment.url
        return None


__all__ = ["ChatOrchestrator"]
