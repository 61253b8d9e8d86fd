"""
Append-only activity log for sessions (session_activities table).

Writes are best-effort: a failed insert is logged and reported as False, never
raised, so the session operation that triggered it still completes.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from agent_runtime.models import utc_now_iso
from agent_runtime.storage import session_store
from agent_runtime.storage.db import insert, select

logger = logging.getLogger("agent-runtime")


def _wrap(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or value == "":
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    return {"data": value}


def log_activity(
    session_id: str,
    activity_type: str,
    input: Any = None,
    output: Any = None,
    *,
    duration_ms: Optional[float] = None,
) -> bool:
    try:
        session_store.init_db()
        insert(
            "session_activities",
            {
                "session_id": session_id,
                "activity_type": activity_type,
                "input": _wrap(input),
                "output": _wrap(output),
                "duration_ms": duration_ms,
                "created_at": utc_now_iso(),
            },
        )
    except Exception as exc:
        logger.warning("log_activity failed session_id=%s type=%s: %s", session_id, activity_type, exc)
        return False
    return True


def list_activities(session_id: str) -> List[Dict[str, Any]]:
    session_store.init_db()
    return select("session_activities", {"session_id": session_id}, order_by="id")
