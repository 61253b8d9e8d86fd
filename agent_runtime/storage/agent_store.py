"""
Agent store: SQLite- or Postgres-backed agent records.

Agents table: (id, name, description, status, execution_mode, model, temperature,
max_tokens, system_prompt, capabilities, knowledge_sources, session_config,
config, created_at)

Records are stored as written; normalisation into AgentConfig happens in
agent_runtime.agent_config so legacy layouts survive a round trip.
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator

from agent_runtime.models import utc_now_iso
from agent_runtime.storage.db import connect, ensure_sqlite_dir, insert, is_postgres, select, select_one, update

logger = logging.getLogger("agent-runtime")

AGENT_COLUMNS = (
    "id",
    "name",
    "description",
    "status",
    "execution_mode",
    "model",
    "temperature",
    "max_tokens",
    "system_prompt",
    "capabilities",
    "knowledge_sources",
    "session_config",
    "config",
    "created_at",
)

# Shape accepted by load_agents_file. Kept permissive on purpose: legacy
# records carry most of their settings inside the `config` blob.
AGENT_RECORD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "status": {"type": ["string", "null"]},
        "execution_mode": {"enum": ["ephemeral", "persistent", "hybrid", None]},
        "model": {"type": ["string", "null"]},
        "temperature": {"type": ["number", "null"], "minimum": 0, "maximum": 2},
        "max_tokens": {"type": ["integer", "null"], "minimum": 1},
        "system_prompt": {"type": ["string", "null"]},
        "capabilities": {"type": ["array", "null"], "items": {"type": "string"}},
        "knowledge_sources": {"type": ["array", "null"], "items": {"type": "string"}},
        "session_config": {
            "type": ["object", "null"],
            "properties": {
                "idle_timeout_minutes": {"type": "number", "minimum": 0},
                "max_session_duration_hours": {"type": "number", "exclusiveMinimum": 0},
                "auto_hibernate": {"type": "boolean"},
                "preserve_context": {"type": "boolean"},
                "max_context_messages": {"type": "integer", "minimum": 1},
            },
        },
        "config": {"type": ["object", "null"]},
    },
}


class AgentRecordInvalid(ValueError):
    """Raised when an agent seed record fails validation."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details


def init_agents_db() -> None:
    """Create the agents table. Idempotent."""
    ensure_sqlite_dir()
    ddl = """
        CREATE TABLE IF NOT EXISTS agents (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            status TEXT,
            execution_mode TEXT,
            model TEXT,
            temperature {real},
            max_tokens INTEGER,
            system_prompt TEXT,
            capabilities TEXT,
            knowledge_sources TEXT,
            session_config TEXT,
            config TEXT,
            created_at TEXT NOT NULL
        )
    """
    with connect() as conn:
        if not is_postgres():
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=3000")
            conn.execute(ddl.format(real="REAL"))
        else:
            conn.execute(ddl.format(real="DOUBLE PRECISION"))
        conn.commit()


def get_agent(agent_id: str) -> Optional[Dict[str, Any]]:
    """Return the stored agent record or None. Do not raise on a missing id."""
    init_agents_db()
    return select_one("agents", {"id": agent_id})


def list_agents() -> List[Dict[str, Any]]:
    init_agents_db()
    return select("agents", order_by="created_at")


def save_agent(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Insert or replace an agent record. Unknown keys are dropped; id and
    created_at are filled in when absent. Returns the stored row.
    """
    init_agents_db()
    row = {k: record.get(k) for k in AGENT_COLUMNS if k in record}
    row["id"] = str(row.get("id") or uuid.uuid4())
    existing = select_one("agents", {"id": row["id"]})
    if existing is None:
        row["created_at"] = row.get("created_at") or utc_now_iso()
        insert("agents", row)
    else:
        values = {k: v for k, v in row.items() if k not in ("id", "created_at")}
        update("agents", values, {"id": row["id"]})
    return select_one("agents", {"id": row["id"]}) or row


def validate_agent_record(record: Any) -> List[Dict[str, Any]]:
    validator = Draft7Validator(AGENT_RECORD_SCHEMA)
    return [{"path": list(err.path), "message": err.message} for err in validator.iter_errors(record)]


def load_agents_file(path: str | Path) -> List[Dict[str, Any]]:
    """
    Seed agents from a YAML or JSON file holding either a single record or a
    list of records. All records are validated before any is written.
    """
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as f:
        if file_path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    records = data if isinstance(data, list) else [data]
    for index, record in enumerate(records):
        errors = validate_agent_record(record)
        if errors:
            raise AgentRecordInvalid(f"Agent record #{index} in {file_path} is invalid", details=errors)

    saved = [save_agent(record) for record in records]
    logger.info("load_agents file=%s count=%d", file_path, len(saved))
    return saved
