from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator

import pytest


@pytest.fixture
def runtime_db_path(monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    """
    Temporary SQLite file for agents, sessions and activities.

    Each test gets its own file. Credentials are cleared so nothing reaches a
    real provider.
    """
    with tempfile.TemporaryDirectory(prefix="agent_runtime_") as tmp:
        path = str(Path(tmp) / "runtime.db")
        monkeypatch.setenv("DB_PATH", path)
        for name in ("DATABASE_URL", "SUPABASE_DATABASE_URL", "E2B_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        yield path


@pytest.fixture
def chatbot_record() -> Dict[str, Any]:
    return {
        "id": "support-bot",
        "name": "Support Bot",
        "description": "Answers support questions",
        "execution_mode": "persistent",
        "model": "gpt-4o-mini",
        "temperature": 0.3,
        "capabilities": ["chat"],
        "session_config": {"idle_timeout_minutes": 30, "max_context_messages": 50},
        "config": {"systemPrompt": "You are a friendly support agent."},
    }


@pytest.fixture
def saved_chatbot(runtime_db_path: str, chatbot_record: Dict[str, Any]) -> Dict[str, Any]:
    from agent_runtime.storage.agent_store import save_agent

    return save_agent(chatbot_record)
