from __future__ import annotations

import pytest

from agent_runtime.mock_executor import mock_execute, recall_name, stated_name
from agent_runtime.models import AgentConfig, AgentType, ConversationMessage


def _config(agent_type: AgentType) -> AgentConfig:
    return AgentConfig(id="mock-agent", name="Helper", type=agent_type)


def test_chatbot_recalls_name_from_context() -> None:
    config = _config(AgentType.CHATBOT)
    first = mock_execute(config, "Hi, I'm Alex")
    context = [
        ConversationMessage(role="user", content="Hi, I'm Alex"),
        ConversationMessage(role="assistant", content=first.output),
    ]

    second = mock_execute(config, "What's my name?", context)

    assert second.success is True
    assert "Alex" in second.output
    assert "simulation mode" in second.output


def test_chatbot_without_known_name() -> None:
    result = mock_execute(_config(AgentType.CHATBOT), "what is my name")
    assert "don't know your name" in result.output


def test_name_detection_requires_capitalised_name() -> None:
    assert stated_name("my name is Priya") == "Priya"
    assert stated_name("I am Sam, hello") == "Sam"
    assert stated_name("I'm fine thanks") is None
    context = [
        ConversationMessage(role="user", content="I'm Ana"),
        ConversationMessage(role="assistant", content="I'm Helper"),
    ]
    assert recall_name("", context) == "Ana"


@pytest.mark.parametrize(
    "agent_type, key",
    [
        (AgentType.DATA_PROCESSOR, "processed"),
        (AgentType.ANALYZER, "insights"),
        (AgentType.AUTOMATION, "actions"),
        (AgentType.CUSTOM, "agentType"),
    ],
)
def test_structured_outputs_are_marked(agent_type: AgentType, key: str) -> None:
    result = mock_execute(_config(agent_type), "quarterly numbers")
    assert result.success is True
    assert key in result.output
    assert "simulation mode" in result.output["note"]
    assert result.logs[0].endswith("E2B not configured - running in simulation mode")
    assert result.execution_time is not None


def test_analyzer_shape() -> None:
    output = mock_execute(_config(AgentType.ANALYZER), "sales").output
    assert output["confidence"] == 0.95
    assert len(output["insights"]) == 3
