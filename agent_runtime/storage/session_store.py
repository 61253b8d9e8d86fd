"""
Session store: SQLite- or Postgres-backed agent sessions and activities.

agent_sessions: (id, agent_id, sandbox_id, status, conversation_context, execution_count,
                 metadata, created_at, last_activity_at, hibernated_at, stopped_at)
session_activities: (id, session_id, activity_type, input, output, duration_ms, created_at)
active_agent_sessions: view over open sessions with a computed should_hibernate flag.

The durable record is the source of truth; the session manager's in-process
caches are reconciled against it.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from agent_runtime.models import OPEN_STATUSES, Session, SessionStatus, utc_now_iso
from agent_runtime.storage.agent_store import init_agents_db
from agent_runtime.storage.db import connect, ensure_sqlite_dir, insert, is_postgres, select, select_one, update

logger = logging.getLogger("agent-runtime")

_SQLITE_VIEW = """
    CREATE VIEW IF NOT EXISTS active_agent_sessions AS
    SELECT
        s.*,
        a.name AS agent_name,
        CASE WHEN s.last_activity_at IS NOT NULL
             AND COALESCE(json_extract(a.session_config, '$.auto_hibernate'), 1) != 0
             AND (julianday('now') - julianday(s.last_activity_at)) * 1440.0
                 >= COALESCE(json_extract(a.session_config, '$.idle_timeout_minutes'), 30)
        THEN 1 ELSE 0 END AS should_hibernate
    FROM agent_sessions s
    JOIN agents a ON a.id = s.agent_id
    WHERE s.status IN ('active', 'idle')
"""

_POSTGRES_VIEW = """
    CREATE OR REPLACE VIEW active_agent_sessions AS
    SELECT
        s.*,
        a.name AS agent_name,
        (s.last_activity_at IS NOT NULL
         AND COALESCE((NULLIF(a.session_config, '')::jsonb ->> 'auto_hibernate')::boolean, TRUE)
         AND s.last_activity_at::timestamptz <= now() - make_interval(
             secs => COALESCE((NULLIF(a.session_config, '')::jsonb ->> 'idle_timeout_minutes')::float8, 30) * 60
         )) AS should_hibernate
    FROM agent_sessions s
    JOIN agents a ON a.id = s.agent_id
    WHERE s.status IN ('active', 'idle')
"""


def init_db() -> None:
    """
    Create session tables, the hibernation view and set PRAGMAs.
    Idempotent; called before every store operation.
    """
    ensure_sqlite_dir()
    init_agents_db()
    with connect() as conn:
        if not is_postgres():
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=3000")
            activity_pk = "INTEGER PRIMARY KEY AUTOINCREMENT"
            view = _SQLITE_VIEW
        else:
            activity_pk = "BIGSERIAL PRIMARY KEY"
            view = _POSTGRES_VIEW
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_sessions (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                sandbox_id TEXT,
                status TEXT NOT NULL,
                conversation_context TEXT NOT NULL DEFAULT '[]',
                execution_count INTEGER NOT NULL DEFAULT 0,
                metadata TEXT,
                created_at TEXT NOT NULL,
                last_activity_at TEXT,
                hibernated_at TEXT,
                stopped_at TEXT
            )
            """
        )
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS session_activities (
                id {activity_pk},
                session_id TEXT NOT NULL,
                activity_type TEXT NOT NULL,
                input TEXT,
                output TEXT,
                duration_ms REAL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_sessions_agent_id ON agent_sessions (agent_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_session_activities_session_id ON session_activities (session_id)")
        conn.execute(view)
        conn.commit()


def _to_session(row: Dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        agent_id=row["agent_id"],
        sandbox_id=row.get("sandbox_id"),
        status=SessionStatus(row["status"]),
        conversation_context=row.get("conversation_context") or [],
        execution_count=int(row.get("execution_count") or 0),
        metadata=row.get("metadata") or {},
        created_at=row.get("created_at"),
        last_activity_at=row.get("last_activity_at"),
        hibernated_at=row.get("hibernated_at"),
        stopped_at=row.get("stopped_at"),
    )


def create_session(
    agent_id: str,
    *,
    sandbox_id: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
    status: SessionStatus = SessionStatus.ACTIVE,
    session_id: Optional[str] = None,
) -> Session:
    """Insert a new session record and return it. The id is generated unless given."""
    init_db()
    now = utc_now_iso()
    row = {
        "id": session_id or str(uuid.uuid4()),
        "agent_id": agent_id,
        "sandbox_id": sandbox_id,
        "status": status,
        "conversation_context": [],
        "execution_count": 0,
        "metadata": metadata or {},
        "created_at": now,
        "last_activity_at": now,
    }
    insert("agent_sessions", row)
    return _to_session({**row, "status": status.value})


def get_session(session_id: str) -> Optional[Session]:
    """Return the session or None when not found."""
    init_db()
    row = select_one("agent_sessions", {"id": session_id})
    return _to_session(row) if row else None


def find_open_session(agent_id: str) -> Optional[Session]:
    """Most recently active session for the agent that is not stopped or errored."""
    init_db()
    row = select_one(
        "agent_sessions",
        {"agent_id": agent_id, "status": list(OPEN_STATUSES)},
        order_by="last_activity_at",
        descending=True,
    )
    return _to_session(row) if row else None


def list_sessions(
    *,
    agent_id: Optional[str] = None,
    statuses: Optional[Iterable[SessionStatus]] = None,
) -> List[Session]:
    init_db()
    filters: Dict[str, Any] = {}
    if agent_id is not None:
        filters["agent_id"] = agent_id
    if statuses is not None:
        filters["status"] = list(statuses)
    rows = select("agent_sessions", filters, order_by="last_activity_at", descending=True)
    return [_to_session(r) for r in rows]


def list_sessions_to_hibernate() -> List[Dict[str, Any]]:
    """Rows of active_agent_sessions whose idle policy says they should hibernate."""
    init_db()
    return select("active_agent_sessions", {"should_hibernate": True})


def update_session(session_id: str, **values: Any) -> bool:
    """Update columns of a session; returns False if no row matched."""
    init_db()
    if "conversation_context" in values:
        values["conversation_context"] = [
            m.model_dump() if hasattr(m, "model_dump") else m for m in values["conversation_context"]
        ]
    return update("agent_sessions", values, {"id": session_id}) > 0
