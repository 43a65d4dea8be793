"""Backend strategy selection and reasoning-effort/tool negotiation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Literal, Mapping, Sequence

from ..errors import (
    IncompatibleEffort,
    InvalidConfiguration,
    ToolNotAllowed,
    ValidationError,
)
from ..schemas.agents import AgentConfig, BackendStrategy

logger = logging.getLogger(__name__)

EFFORT_LEVELS: tuple[str, ...] = ("minimal", "low", "medium", "high")

BUILTIN_TOOLS: tuple[str, ...] = (
    "web_search",
    "image_generation",
    "file_search",
    "code_interpreter",
)

TOOL_ALIASES: dict[str, str] = {
    "search": "web_search",
    "web": "web_search",
    "image": "image_generation",
    "images": "image_generation",
    "files": "file_search",
    "file": "file_search",
    "code": "code_interpreter",
}

# Which built-in tools each effort level can drive.
EFFORT_TOOL_COMPATIBILITY: dict[str, frozenset[str]] = {
    "minimal": frozenset(),
    "low": frozenset(BUILTIN_TOOLS),
    "medium": frozenset(BUILTIN_TOOLS),
    "high": frozenset(BUILTIN_TOOLS),
}

EffortPolicy = Literal["bump", "reject"]


@dataclass(frozen=True)
class RoutingDecision:
    """Validated strategy, effort and tools for one turn."""

    strategy: BackendStrategy
    model: str
    effort: str | None = None
    tools: tuple[str, ...] = ()
    coerced: bool = False
    requested_effort: str | None = None
    assistant_id: str | None = None
    supplementary_instructions: str | None = None
    function_tools: tuple[str, ...] = field(default=())

    @property
    def builtin_tools(self) -> tuple[str, ...]:
        return tuple(tool for tool in self.tools if tool in BUILTIN_TOOLS)


def normalize_tool_name(name: str) -> str:
    key = name.strip().lower()
    return TOOL_ALIASES.get(key, key)


def normalize_tools(names: Iterable[str] | None) -> tuple[str, ...]:
    """Resolve aliases and drop duplicates while keeping request order."""

    seen: dict[str, None] = {}
    for name in names or ():
        if not name or not name.strip():
            continue
        seen.setdefault(normalize_tool_name(name), None)
    return tuple(seen)


def minimum_compatible_effort(
    tools: Sequence[str],
    compatibility: Mapping[str, frozenset[str]] = EFFORT_TOOL_COMPATIBILITY,
    *,
    floor: str = "minimal",
) -> str | None:
    """Return the lowest effort at or above ``floor`` supporting every tool."""

    required = {tool for tool in tools if tool in BUILTIN_TOOLS}
    start = EFFORT_LEVELS.index(floor)
    for level in EFFORT_LEVELS[start:]:
        if required <= compatibility.get(level, frozenset()):
            return level
    return None


class RequestRouter:
    """Decide how a turn reaches the model."""

    def __init__(
        self,
        *,
        default_model: str,
        default_effort: str = "low",
        policy: EffortPolicy = "bump",
        compatibility: Mapping[str, frozenset[str]] | None = None,
    ) -> None:
        if default_effort not in EFFORT_LEVELS:
            raise ValueError(f"Unknown default effort: {default_effort}")
        self._default_model = default_model
        self._default_effort = default_effort
        self._policy = policy
        self._compatibility = dict(compatibility or EFFORT_TOOL_COMPATIBILITY)

    def route(
        self,
        agent: AgentConfig,
        *,
        model: str | None = None,
        effort: str | None = None,
        tools: Iterable[str] | None = None,
    ) -> RoutingDecision:
        if agent.strategy == "persistent-thread":
            if not agent.assistant_id:
                raise InvalidConfiguration(
                    f"Agent {agent.id!r} uses persistent threads but has no assistant handle"
                )
            return RoutingDecision(
                strategy="persistent-thread",
                model=agent.default_model or self._default_model,
                assistant_id=agent.assistant_id,
                supplementary_instructions=agent.background_instructions or None,
            )

        requested_tools = normalize_tools(tools)
        self._check_allowed(agent, requested_tools)

        requested_effort = (effort or "").strip().lower() or None
        if requested_effort is not None and requested_effort not in EFFORT_LEVELS:
            raise ValidationError(f"Unknown reasoning effort: {effort}")
        chosen = requested_effort or self._default_effort

        coerced = False
        supported = self._compatibility.get(chosen, frozenset())
        builtin = [tool for tool in requested_tools if tool in BUILTIN_TOOLS]
        if not set(builtin) <= supported:
            bumped = minimum_compatible_effort(
                builtin, self._compatibility, floor=chosen
            )
            if bumped is None or self._policy == "reject":
                raise IncompatibleEffort(
                    f"Reasoning effort {chosen!r} does not support tools: "
                    f"{', '.join(sorted(set(builtin) - supported))}"
                )
            logger.info(
                "Raising reasoning effort for agent %s from %s to %s for tools %s",
                agent.id,
                chosen,
                bumped,
                builtin,
            )
            chosen = bumped
            coerced = True

        return RoutingDecision(
            strategy="stateless-completion",
            model=model or agent.default_model or self._default_model,
            effort=chosen,
            tools=requested_tools,
            coerced=coerced,
            requested_effort=requested_effort or self._default_effort,
            supplementary_instructions=agent.background_instructions or None,
            function_tools=tuple(
                tool for tool in agent.allowed_tools if tool not in BUILTIN_TOOLS
            ),
        )

    @staticmethod
    def _check_allowed(agent: AgentConfig, tools: Sequence[str]) -> None:
        allowed = set(normalize_tools(agent.allowed_tools))
        if not allowed:
            disallowed = [tool for tool in tools if tool not in BUILTIN_TOOLS]
        else:
            disallowed = [tool for tool in tools if tool not in allowed]
        if disallowed:
            raise ToolNotAllowed(
                f"Agent {agent.id!r} does not allow tools: {', '.join(disallowed)}"
            )


__all__ = [
    "BUILTIN_TOOLS",
    "EFFORT_LEVELS",
    "EFFORT_TOOL_COMPATIBILITY",
    "RequestRouter",
    "RoutingDecision",
    "TOOL_ALIASES",
    "minimum_compatible_effort",
    "normalize_tool_name",
    "normalize_tools",
]
