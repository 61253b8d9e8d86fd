from __future__ import annotations

import pytest

from agent_runtime.engine import run_agent
from agent_runtime.sandbox import MockSandboxGateway
from agent_runtime.session_manager import AgentNotFound, SessionError, SessionManager
from agent_runtime.storage import session_store
from agent_runtime.storage.agent_store import save_agent


@pytest.fixture
def manager() -> SessionManager:
    return SessionManager(MockSandboxGateway())


@pytest.mark.asyncio
async def test_ephemeral_run_uses_one_shot_path(runtime_db_path, manager) -> None:
    save_agent({"id": "cruncher", "name": "Cruncher", "capabilities": ["data-processing"]})

    envelope = await run_agent("cruncher", {"rows": [1, 2, 3]}, manager=manager)

    assert envelope["meta"]["mode"] == "ephemeral"
    assert envelope["meta"]["success"] is True
    assert "session_id" not in envelope["meta"]
    assert envelope["output"]["processed"] is True
    assert session_store.list_sessions(agent_id="cruncher") == []


@pytest.mark.asyncio
async def test_persistent_run_reuses_session(runtime_db_path, manager, saved_chatbot) -> None:
    first = await run_agent("support-bot", "Hi, I'm Alex", manager=manager)
    second = await run_agent("support-bot", "What's my name?", manager=manager)

    assert first["meta"]["session_id"] == second["meta"]["session_id"]
    assert "Alex" in second["output"]
    assert second["logs"][0].endswith("running in simulation mode")


@pytest.mark.asyncio
async def test_new_session_flag_opens_another_session(runtime_db_path, manager, saved_chatbot) -> None:
    first = await run_agent("support-bot", "hello", manager=manager)
    second = await run_agent("support-bot", "hello", new_session=True, manager=manager)
    assert first["meta"]["session_id"] != second["meta"]["session_id"]


@pytest.mark.asyncio
async def test_unknown_agent(runtime_db_path, manager) -> None:
    with pytest.raises(AgentNotFound):
        await run_agent("ghost", "boo", manager=manager)


@pytest.mark.asyncio
async def test_session_of_another_agent_is_rejected(runtime_db_path, manager, saved_chatbot) -> None:
    save_agent({"id": "helper", "name": "Helper", "execution_mode": "persistent", "capabilities": ["chat"]})
    envelope = await run_agent("support-bot", "hello", manager=manager)
    session_id = envelope["meta"]["session_id"]

    with pytest.raises(SessionError):
        await run_agent("helper", "hello", session_id=session_id, manager=manager)

    assert session_store.get_session(session_id).execution_count == 1
