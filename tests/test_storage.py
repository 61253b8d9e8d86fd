from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_runtime.models import ConversationMessage, SessionStatus
from agent_runtime.storage import activity_log, session_store
from agent_runtime.storage.agent_store import AgentRecordInvalid, get_agent, list_agents, load_agents_file, save_agent
from agent_runtime.storage.db import PersistenceError, select, update


def test_agent_round_trip_keeps_json_columns(runtime_db_path, chatbot_record) -> None:
    saved = save_agent(chatbot_record)
    loaded = get_agent("support-bot")

    assert loaded == saved
    assert loaded["capabilities"] == ["chat"]
    assert loaded["config"] == {"systemPrompt": "You are a friendly support agent."}
    assert loaded["created_at"].endswith("Z")
    assert get_agent("nope") is None


def test_save_agent_upserts(runtime_db_path, chatbot_record) -> None:
    save_agent(chatbot_record)
    save_agent({**chatbot_record, "model": "claude-3-haiku"})
    assert [a["model"] for a in list_agents()] == ["claude-3-haiku"]


def test_load_agents_file_yaml(runtime_db_path, tmp_path: Path) -> None:
    seed = tmp_path / "agents.yaml"
    seed.write_text(
        "- id: analyst\n"
        "  name: Analyst\n"
        "  capabilities: [data-analysis]\n"
        "- name: Unnamed Id\n"
        "  execution_mode: persistent\n"
        "  session_config:\n"
        "    idle_timeout_minutes: 5\n",
        encoding="utf-8",
    )
    saved = load_agents_file(seed)
    assert len(saved) == 2
    assert saved[0]["id"] == "analyst"
    assert saved[1]["session_config"] == {"idle_timeout_minutes": 5}


def test_load_agents_file_rejects_invalid_records(runtime_db_path, tmp_path: Path) -> None:
    seed = tmp_path / "agents.json"
    seed.write_text(json.dumps([{"id": "ok", "name": "Fine"}, {"id": "bad", "temperature": 7}]), encoding="utf-8")

    with pytest.raises(AgentRecordInvalid) as exc:
        load_agents_file(seed)

    assert "#1" in str(exc.value)
    assert {tuple(e["path"]) for e in exc.value.details} >= {("temperature",)}
    assert list_agents() == []


def test_session_filters_and_context_encoding(runtime_db_path, saved_chatbot) -> None:
    first = session_store.create_session("support-bot", sandbox_id="sbx-1")
    second = session_store.create_session("support-bot", sandbox_id="sbx-2")
    session_store.update_session(
        first.id,
        status=SessionStatus.STOPPED,
        conversation_context=[ConversationMessage(role="user", content="hi")],
    )

    stopped = session_store.list_sessions(statuses=[SessionStatus.STOPPED])
    assert [s.id for s in stopped] == [first.id]
    assert stopped[0].conversation_context[0].content == "hi"
    assert session_store.find_open_session("support-bot").id == second.id
    assert session_store.list_sessions(statuses=[]) == []
    assert select("agent_sessions", {"hibernated_at": None, "id": second.id})[0]["sandbox_id"] == "sbx-2"
    assert session_store.update_session("missing", status=SessionStatus.STOPPED) is False


def test_should_hibernate_view(runtime_db_path, saved_chatbot) -> None:
    save_agent({"id": "quick", "name": "Quick", "session_config": {"idle_timeout_minutes": 0.5}})
    idle = session_store.create_session("support-bot", sandbox_id="a")
    recent = session_store.create_session("quick", sandbox_id="b")
    stopped = session_store.create_session("support-bot", sandbox_id="c", status=SessionStatus.STOPPED)
    for session in (idle, stopped):
        session_store.update_session(session.id, last_activity_at="2021-06-01T10:00:00.000Z")

    rows = session_store.list_sessions_to_hibernate()

    assert [r["id"] for r in rows] == [idle.id]
    assert rows[0]["agent_name"] == "Support Bot"
    assert recent.id not in {r["id"] for r in rows}


def test_update_requires_filters(runtime_db_path) -> None:
    with pytest.raises(ValueError):
        update("agent_sessions", {"status": "stopped"}, {})


def test_activity_log_wraps_payloads(runtime_db_path, saved_chatbot) -> None:
    session = session_store.create_session("support-bot", sandbox_id="sbx")
    assert activity_log.log_activity(session.id, "execution", "hello", {"answer": 1}, duration_ms=3.5) is True
    assert activity_log.log_activity(session.id, "stopped") is True

    rows = activity_log.list_activities(session.id)
    assert rows[0]["input"] == {"data": "hello"}
    assert rows[0]["output"] == {"data": {"answer": 1}}
    assert rows[0]["duration_ms"] == 3.5
    assert rows[1]["input"] is None and rows[1]["output"] is None


def test_activity_log_failure_is_not_raised(runtime_db_path, monkeypatch) -> None:
    def broken_insert(*args, **kwargs):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(activity_log, "insert", broken_insert)
    assert activity_log.log_activity("s-1", "execution", "hello") is False
