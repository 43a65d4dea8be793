from __future__ import annotations

import pytest

from agent_hub.chat.policies import (
    RequestRouter,
    minimum_compatible_effort,
    normalize_tools,
)
from agent_hub.errors import (
    IncompatibleEffort,
    InvalidConfiguration,
    ToolNotAllowed,
    ValidationError,
)
from agent_hub.schemas.agents import AgentConfig


def _agent(**overrides) -> AgentConfig:
    data = {"id": "support", "name": "Support", "system_prompt": "Be helpful."}
    data.update(overrides)
    return AgentConfig.model_validate(data)


def test_aliases_resolve_and_deduplicate() -> None:
    assert normalize_tools(["search", "web_search", " Image ", "code"]) == (
        "web_search",
        "image_generation",
        "code_interpreter",
    )


def test_minimum_compatible_effort_respects_floor() -> None:
    assert minimum_compatible_effort(["web_search"]) == "low"
    assert minimum_compatible_effort(["web_search"], floor="medium") == "medium"
    assert minimum_compatible_effort([]) == "minimal"


def test_minimal_effort_is_bumped_when_tools_requested() -> None:
    router = RequestRouter(default_model="gpt-5-mini")
    agent = _agent(allowed_tools=["web_search"])

    decision = router.route(agent, effort="minimal", tools=["search"])

    assert decision.strategy == "stateless-completion"
    assert decision.effort == "low"
    assert decision.coerced is True
    assert decision.requested_effort == "minimal"
    assert decision.tools == ("web_search",)


def test_compatible_effort_is_left_alone() -> None:
    router = RequestRouter(default_model="gpt-5-mini")

    decision = router.route(_agent(), effort="high")

    assert decision.effort == "high"
    assert decision.coerced is False


def test_reject_policy_refuses_incompatible_effort() -> None:
    router = RequestRouter(default_model="gpt-5-mini", policy="reject")
    agent = _agent(allowed_tools=["web_search"])

    with pytest.raises(IncompatibleEffort):
        router.route(agent, effort="minimal", tools=["web_search"])


def test_unknown_effort_is_a_validation_error() -> None:
    router = RequestRouter(default_model="gpt-5-mini")

    with pytest.raises(ValidationError):
        router.route(_agent(), effort="extreme")


def test_disallowed_tool_is_rejected() -> None:
    router = RequestRouter(default_model="gpt-5-mini")
    agent = _agent(allowed_tools=["web_search"])

    with pytest.raises(ToolNotAllowed):
        router.route(agent, tools=["code"])


def test_persistent_thread_agent_bypasses_negotiation() -> None:
    router = RequestRouter(default_model="gpt-5-mini")
    agent = _agent(
        backend="persistent-thread",
        assistant_id="asst_123",
        background_instructions="Cite the clause.",
    )

    decision = router.route(agent, effort="minimal", tools=["web_search"])

    assert decision.strategy == "persistent-thread"
    assert decision.assistant_id == "asst_123"
    assert decision.effort is None
    assert decision.coerced is False
    assert decision.supplementary_instructions == "Cite the clause."


def test_persistent_thread_without_handle_is_invalid() -> None:
    router = RequestRouter(default_model="gpt-5-mini")
    agent = _agent(backend="persistent-thread")

    with pytest.raises(InvalidConfiguration):
        router.route(agent)


def test_handle_without_thread_backend_fails_validation() -> None:
    with pytest.raises(ValueError):
        _agent(assistant_id="asst_123")


def test_agent_model_overrides_default_and_request_overrides_agent() -> None:
    router = RequestRouter(default_model="gpt-5-mini")
    agent = _agent(default_model="gpt-5")

    assert router.route(agent).model == "gpt-5"
    assert router.route(agent, model="gpt-4.1").model == "gpt-4.1"
