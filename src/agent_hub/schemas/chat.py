"""Pydantic models for chat requests and responses."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class TurnAttachment(BaseModel):
    """Attachment metadata sent with a user message."""

    type: Optional[Literal["image", "file"]] = None
    url: Optional[str] = None
    storage_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("storage_path", "storagePath"),
    )
    provider_file_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "provider_file_id", "openai_file_id", "providerFileId"
        ),
    )
    mime_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mime_type", "mimeType", "content_type"),
    )
    name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TurnMessage(BaseModel):
    """A single message from the client-side conversation."""

    role: Literal["system", "user", "assistant"] = "user"
    content: Optional[str] = None
    content_md: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("content_md", "contentMd"),
    )
    attachments: List[TurnAttachment] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def text(self) -> str:
        """Return the message body, preferring the markdown field when present."""

        for candidate in (self.content_md, self.content):
            if candidate and candidate.strip():
                return candidate.strip()
        return ""


class ChatTurnRequest(BaseModel):
    """Incoming chat turn payload."""

    session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sessionId", "session_id", "chatId"),
    )
    agent_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("agentId", "agent_id"),
    )
    messages: List[TurnMessage] = Field(default_factory=list)
    model: Optional[str] = None
    reasoning_effort: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("reasoningEffort", "reasoning_effort"),
    )
    requested_tools: Optional[List[str]] = Field(
        default=None,
        validation_alias=AliasChoices("requestedTools", "requested_tools"),
    )
    user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userId", "user_id"),
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def is_new_conversation(self) -> bool:
        return not self.session_id or self.session_id.startswith("temp-")

    @property
    def conversation_key(self) -> Optional[str]:
        """Client-side key used to deduplicate first-turn session creation."""

        if self.session_id and self.session_id.startswith("temp-"):
            return self.session_id
        return None


class StoredMessage(BaseModel):
    """Message as returned by the history endpoint."""

    id: int
    session_id: str
    role: Literal["user", "assistant", "error"]
    content: str
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    tool_calls: Optional[List[Dict[str, Any]]] = None
    truncated: bool = False
    model: Optional[str] = None
    created_at: str


class SessionSummary(BaseModel):
    """Entry in the recent-sessions listing."""

    session_id: str
    title: str = "New Chat"
    agent_id: str
    agent_name: Optional[str] = None
    agent_department: Optional[str] = None
    message_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, value: Any) -> Any:
        return value or "New Chat"


__all__ = [
    "ChatTurnRequest",
    "SessionSummary",
    "StoredMessage",
    "TurnAttachment",
    "TurnMessage",
]
