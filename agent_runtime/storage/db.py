"""
Database helpers for SQLite (local) and Postgres (Supabase).

Exposes a small filtered select/insert/update surface over named tables so the
session manager never builds SQL itself. JSON columns are encoded on the way
in and decoded on the way out.
"""

from __future__ import annotations

import json
import os
import re
import sqlite3
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from agent_runtime.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None


JSON_COLUMNS = frozenset(
    {
        "capabilities",
        "knowledge_sources",
        "session_config",
        "config",
        "conversation_context",
        "metadata",
        "input",
        "output",
    }
)

_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

_DB_ERRORS: Tuple[type, ...] = (sqlite3.Error,)
if psycopg is not None:  # pragma: no cover - depends on optional install
    _DB_ERRORS = (sqlite3.Error, psycopg.Error)


class PersistenceError(RuntimeError):
    """Raised when a durable-store read or write fails."""


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str


def _database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DATABASE_URL")


def get_db_info() -> DbInfo:
    database_url = _database_url()
    db_path = get_settings().db_path
    if database_url:
        return DbInfo(dialect="postgres", database_url=database_url, db_path=db_path)
    return DbInfo(dialect="sqlite", database_url=None, db_path=db_path)


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


def ensure_sqlite_dir() -> None:
    if is_postgres():
        return
    Path(get_settings().db_path).parent.mkdir(parents=True, exist_ok=True)


def connect() -> Any:
    info = get_db_info()
    if info.dialect == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections")
        return psycopg.connect(info.database_url, row_factory=dict_row)
    conn = sqlite3.connect(info.db_path)
    conn.row_factory = sqlite3.Row
    return conn


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query


def _ident(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def encode_value(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value, default=_plain)
    return _plain(value)


def decode_row(row: Any) -> Dict[str, Any]:
    out = dict(row)
    for column in JSON_COLUMNS.intersection(out.keys()):
        raw = out[column]
        if isinstance(raw, (str, bytes)):
            try:
                out[column] = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                pass
    return out


def _where(filters: Optional[Mapping[str, Any]]) -> Tuple[str, List[Any]]:
    if not filters:
        return "", []
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in filters.items():
        column = _ident(column)
        if isinstance(value, (list, tuple, set, frozenset)):
            values = [_plain(v) for v in value]
            if not values:
                clauses.append("1 = 0")
                continue
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        elif value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = ?")
            params.append(_plain(value))
    return " WHERE " + " AND ".join(clauses), params


def execute(query: str, params: Iterable[Any] = ()) -> int:
    """Run a statement, commit, and return the affected row count."""
    try:
        with connect() as conn:
            cur = conn.execute(sql(query), tuple(params))
            conn.commit()
            return cur.rowcount
    except _DB_ERRORS as exc:
        raise PersistenceError(str(exc)) from exc


def select(
    table: str,
    filters: Optional[Mapping[str, Any]] = None,
    *,
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Return rows from `table` matching all `filters` (equality, or IN for sequences)."""
    where, params = _where(filters)
    query = f"SELECT * FROM {_ident(table)}{where}"
    if order_by:
        query += f" ORDER BY {_ident(order_by)} {'DESC' if descending else 'ASC'}"
    if limit is not None:
        query += f" LIMIT {int(limit)}"
    try:
        with connect() as conn:
            rows = conn.execute(sql(query), tuple(params)).fetchall()
    except _DB_ERRORS as exc:
        raise PersistenceError(str(exc)) from exc
    return [decode_row(r) for r in rows]


def select_one(
    table: str,
    filters: Optional[Mapping[str, Any]] = None,
    *,
    order_by: Optional[str] = None,
    descending: bool = False,
) -> Optional[Dict[str, Any]]:
    rows = select(table, filters, order_by=order_by, descending=descending, limit=1)
    return rows[0] if rows else None


def insert(table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
    """Insert one row; returns the row as written (JSON columns still decoded)."""
    columns = [_ident(c) for c in row.keys()]
    placeholders = ", ".join("?" for _ in columns)
    params = [encode_value(c, row[c]) for c in columns]
    execute(f"INSERT INTO {_ident(table)} ({', '.join(columns)}) VALUES ({placeholders})", params)
    return dict(row)


def update(table: str, values: Mapping[str, Any], filters: Mapping[str, Any]) -> int:
    """Update rows matching `filters`; returns the number of rows changed."""
    if not values:
        return 0
    if not filters:
        raise ValueError("update() requires at least one filter")
    assignments = ", ".join(f"{_ident(c)} = ?" for c in values.keys())
    params = [encode_value(c, v) for c, v in values.items()]
    where, where_params = _where(filters)
    return execute(f"UPDATE {_ident(table)} SET {assignments}{where}", params + where_params)
