"""Resolver, provider rules and payload generation."""

from __future__ import annotations

import json

import pytest

from agent_runtime.agent_config import (
    infer_agent_type,
    parse_execution_mode,
    parse_session_config,
    resolve,
)
from agent_runtime.models import AgentType, ConversationMessage, ExecutionMode, OutputFormat
from agent_runtime.payloads import (
    build_context_messages,
    generate_contextual_payload,
    generate_init_payload,
    generate_runtime_payload,
)
from agent_runtime.providers import environment_for, match_provider, packages_for


def test_type_inferred_from_capabilities_when_missing() -> None:
    config = resolve({"id": "a1", "name": "Insight", "capabilities": ["data-analysis"]})
    assert config.type == AgentType.ANALYZER


@pytest.mark.parametrize(
    "capabilities, expected",
    [
        (["automation", "data-analysis"], AgentType.ANALYZER),
        (["automation", "data-processing"], AgentType.DATA_PROCESSOR),
        (["email", "automation"], AgentType.AUTOMATION),
        (["email"], AgentType.CHATBOT),
        (["web-search"], AgentType.CHATBOT),
        (None, AgentType.CHATBOT),
    ],
)
def test_capability_precedence(capabilities, expected) -> None:
    assert infer_agent_type(capabilities) == expected


def test_explicit_type_beats_capabilities() -> None:
    config = resolve({"id": "a1", "name": "X", "capabilities": ["data-analysis"], "config": {"type": "automation"}})
    assert config.type == AgentType.AUTOMATION


def test_top_level_fields_win_over_legacy_blob() -> None:
    record = {
        "id": "a2",
        "name": "Writer",
        "model": "claude-3-5-sonnet",
        "temperature": 0,
        "knowledge_sources": ["kb-1"],
        "config": {
            "model": "gpt-3.5-turbo",
            "temperature": 1.2,
            "maxTokens": 512,
            "systemPrompt": "Write tersely.",
            "dataSources": ["legacy-kb"],
            "outputFormat": "markdown",
            "tools": [{"name": "search", "description": "web search"}, {"description": "no name"}],
        },
    }
    config = resolve(record)
    assert config.model == "claude-3-5-sonnet"
    assert config.temperature == 0.0
    assert config.max_tokens == 512
    assert config.system_prompt == "Write tersely."
    assert config.data_sources == ["kb-1"]
    assert config.output_format == OutputFormat.MARKDOWN
    assert [t.name for t in config.tools] == ["search"]


def test_minimal_record_is_fully_populated() -> None:
    config = resolve({"id": "a3", "name": "Bare"})
    assert config.model == "gpt-4"
    assert config.temperature == 0.7
    assert config.max_tokens == 2000
    assert config.system_prompt == "You are Bare, a helpful AI assistant."
    assert config.output_format == OutputFormat.TEXT
    assert config.tools == [] and config.settings == {}


def test_out_of_range_values_are_clamped_or_defaulted() -> None:
    config = resolve({"id": "a4", "name": "Hot", "temperature": 9, "max_tokens": -5})
    assert config.temperature == 2.0
    assert config.max_tokens == 2000


def test_session_config_keeps_zero_timeout_and_defaults_rest() -> None:
    policy = parse_session_config({"idle_timeout_minutes": 0, "auto_hibernate": False})
    assert policy.idle_timeout_minutes == 0
    assert policy.auto_hibernate is False
    assert policy.max_context_messages == 50
    assert parse_session_config({"max_context_messages": 0}).max_context_messages == 50
    assert parse_session_config(None).idle_timeout_minutes == 30


def test_execution_mode_defaults_to_ephemeral() -> None:
    assert parse_execution_mode(None) == ExecutionMode.EPHEMERAL
    assert parse_execution_mode("Persistent") == ExecutionMode.PERSISTENT
    assert parse_execution_mode("bogus") == ExecutionMode.EPHEMERAL


def test_provider_rules(monkeypatch: pytest.MonkeyPatch) -> None:
    assert match_provider("gpt-4o").name == "openai"
    assert match_provider("text-davinci-003").name == "openai"
    assert match_provider("claude-3-haiku").name == "anthropic"
    assert match_provider("mistral-large").name == "openai"
    assert packages_for("claude-3-haiku")[0] == "anthropic"

    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-oai")
    monkeypatch.setenv("EXA_API_KEY", "exa")
    assert environment_for("claude-3-haiku") == {"ANTHROPIC_API_KEY": "sk-ant", "EXA_API_KEY": "exa"}
    monkeypatch.delenv("EXA_API_KEY")
    assert environment_for("gpt-4") == {"OPENAI_API_KEY": "sk-oai"}


def _messages(n: int):
    return [
        ConversationMessage(role="user" if i % 2 == 0 else "assistant", content=f"m{i}") for i in range(n)
    ]


def test_context_messages_order_and_window() -> None:
    config = resolve({"id": "a5", "name": "Chat", "system_prompt": "Be kind."})
    messages = build_context_messages(config, "new question", _messages(14))

    assert messages[0] == {"role": "system", "content": "Be kind."}
    assert [m["content"] for m in messages[1:-1]] == [f"m{i}" for i in range(4, 14)]
    assert messages[-1] == {"role": "user", "content": "new question"}


def test_contextual_payload_embeds_input_as_json_literal() -> None:
    config = resolve({"id": "a6", "name": "Chat", "model": "claude-3-opus"})
    tricky = 'He said "hi"\nand left \\ bye'
    code = generate_contextual_payload(config, tricky, _messages(2))

    assert 'PROVIDER = "anthropic"' in code
    assert 'MODEL = "claude-3-opus"' in code
    messages_line = next(line for line in code.splitlines() if line.startswith("MESSAGES = "))
    literal = messages_line[len("MESSAGES = json.loads(") : -1]
    messages = json.loads(json.loads(literal))
    assert messages[-1] == {"role": "user", "content": tricky}


def test_init_payload_seeds_context() -> None:
    config = resolve({"id": "a7", "name": "Seeded"})
    code = generate_init_payload(config, _messages(3))
    assert "AGENT_CONFIG = json.loads(" in code
    assert "CONVERSATION_CONTEXT = json.loads(" in code
    assert "initialized in persistent session" in code


def test_runtime_payload_languages() -> None:
    config = resolve({"id": "a8", "name": "Proc", "capabilities": ["data-processing"]})
    python_code = generate_runtime_payload(config, {"rows": [1, 2]}, "python")
    js_code = generate_runtime_payload(config, {"rows": [1, 2]}, "javascript")

    assert "sys.exit(0 if _result.get(\"success\") else 1)" in python_code
    assert '"outputFormat": "text"' in js_code
    assert js_code.startswith("const agentConfig = ")
    with pytest.raises(ValueError):
        generate_runtime_payload(config, {}, "ruby")
