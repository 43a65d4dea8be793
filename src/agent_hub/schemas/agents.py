"""Schemas describing configured chat agents."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

BackendStrategy = Literal["persistent-thread", "stateless-completion"]


class AgentConfig(BaseModel):
    """Persona selected for a chat session."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str
    department: Optional[str] = None
    system_prompt: str = ""
    background_instructions: Optional[str] = None
    backend: Optional[BackendStrategy] = None
    assistant_id: Optional[str] = None
    mode: Literal["prompt", "tools", "hybrid"] = "prompt"
    allowed_tools: list[str] = Field(default_factory=list)
    default_model: Optional[str] = None
    knowledge_base: bool = False
    is_active: bool = True

    @model_validator(mode="after")
    def _check_backend_handle(self) -> "AgentConfig":
        # Thread agents without a handle load fine; the router refuses them.
        if self.assistant_id and self.backend != "persistent-thread":
            raise ValueError(
                f"Agent {self.id!r} has an assistant_id but backend is {self.backend!r}"
            )
        return self

    @property
    def strategy(self) -> BackendStrategy:
        return self.backend or "stateless-completion"


class AgentSummary(BaseModel):
    """Public listing entry for an agent."""

    id: str
    name: str
    department: Optional[str] = None
    mode: str


class AgentCollection(BaseModel):
    agents: list[AgentConfig]


__all__ = ["AgentCollection", "AgentConfig", "AgentSummary", "BackendStrategy"]
