from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

from .agent_config import parse_execution_mode, resolve
from .models import AgentConfig, ExecutionMode, ExecutionResult
from .providers import environment_for
from .session_manager import AgentNotFound, SessionError, SessionManager, SessionNotFound
from .storage import agent_store

logger = logging.getLogger("agent-runtime")


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_run_envelope(
    result: ExecutionResult,
    *,
    request_id: str,
    config: AgentConfig,
    mode: ExecutionMode,
    latency_ms: float,
    session_id: str | None = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "request_id": request_id,
        "agent": config.id,
        "agent_name": config.name,
        "mode": mode.value,
        "success": result.success,
        "latency_ms": latency_ms,
    }
    if session_id is not None:
        meta["session_id"] = session_id
    if result.execution_time is not None:
        meta["execution_time_ms"] = result.execution_time
    body: Dict[str, Any] = {"output": result.output, "meta": meta}
    if result.error:
        body["error"] = result.error
    if result.logs:
        body["logs"] = result.logs
    return body


def _input_text(input_data: Any) -> str:
    return input_data if isinstance(input_data, str) else json.dumps(input_data, default=str)


async def run_agent(
    agent_id: str,
    input_data: Any,
    *,
    session_id: Optional[str] = None,
    new_session: bool = False,
    include_context: bool = True,
    language: str = "python",
    manager: Optional[SessionManager] = None,
) -> Dict[str, Any]:
    """
    Run an agent once and return the result envelope.

    Ephemeral agents run in a throwaway sandbox unless a session id is given.
    Persistent and hybrid agents reuse (or open) a session.
    """
    request_id = new_request_id()
    start = time.monotonic()

    record = agent_store.get_agent(agent_id)
    if record is None:
        raise AgentNotFound(f"Agent {agent_id} not found")
    config = resolve(record)
    mode = parse_execution_mode(record.get("execution_mode"))
    manager = manager or SessionManager()

    if session_id is not None:
        session = manager.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.agent_id != agent_id:
            raise SessionError(f"Session {session_id} belongs to agent {session.agent_id}, not {agent_id}")
    elif mode != ExecutionMode.EPHEMERAL:
        session = await manager.get_or_create_session(record, create_new=new_session)
        session_id = session.id if session is not None else None

    if session_id is not None:
        result = await manager.execute_in_session(session_id, _input_text(input_data), include_context)
    else:
        result = await manager.gateway.run_once(
            f"oneshot-{request_id}",
            config,
            input_data,
            language=language,
            env=environment_for(config.model),
        )

    latency_ms = (time.monotonic() - start) * 1000.0
    logger.info(
        "run_agent request_id=%s agent_id=%s mode=%s session_id=%s success=%s latency_ms=%.1f",
        request_id,
        agent_id,
        mode.value,
        session_id,
        result.success,
        latency_ms,
    )
    return build_run_envelope(
        result,
        request_id=request_id,
        config=config,
        mode=mode,
        latency_ms=latency_ms,
        session_id=session_id,
    )
