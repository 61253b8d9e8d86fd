"""
Data models for the agent session runtime.

Defines AgentConfig, SessionConfig, ConversationMessage, ExecutionResult and
Session, plus the enums they are built from. Do not duplicate these
definitions elsewhere.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a trailing Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AgentType(str, Enum):
    DATA_PROCESSOR = "data_processor"
    ANALYZER = "analyzer"
    CHATBOT = "chatbot"
    AUTOMATION = "automation"
    CUSTOM = "custom"


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"
    HTML = "html"


class ExecutionMode(str, Enum):
    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"
    HYBRID = "hybrid"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    HIBERNATED = "hibernated"
    STOPPED = "stopped"
    ERROR = "error"


# Sessions in these states may still be picked up by get_or_create_session.
OPEN_STATUSES = (SessionStatus.ACTIVE, SessionStatus.IDLE, SessionStatus.HIBERNATED)


class AgentTool(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    handler: Optional[str] = None


class AgentConfig(BaseModel):
    """Resolved, read-only view of a stored agent record. Every field is populated."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str
    name: str
    type: AgentType = AgentType.CHATBOT
    description: str = ""
    model: str = "gpt-4"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    system_prompt: str = ""
    tools: List[AgentTool] = Field(default_factory=list)
    data_sources: List[str] = Field(default_factory=list)
    schedule: Optional[str] = None
    triggers: List[Dict[str, Any]] = Field(default_factory=list)
    output_format: OutputFormat = OutputFormat.TEXT
    settings: Dict[str, Any] = Field(default_factory=dict)


class SessionConfig(BaseModel):
    """Per-agent session policy."""

    idle_timeout_minutes: float = Field(default=30, ge=0)
    max_session_duration_hours: float = Field(default=24, gt=0)
    auto_hibernate: bool = True
    preserve_context: bool = True
    max_context_messages: int = Field(default=50, ge=1)


class ConversationMessage(BaseModel):
    """A single entry in a session's conversation context. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: str = Field(default_factory=utc_now_iso)
    metadata: Optional[Dict[str, Any]] = None


class ExecutionResult(BaseModel):
    """Uniform result returned by every execution path (real, mock, one-shot, session)."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    logs: Optional[List[str]] = None
    execution_time: Optional[float] = None  # milliseconds


class Session(BaseModel):
    """Durable session record as stored in agent_sessions."""

    id: str
    agent_id: str
    sandbox_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    conversation_context: List[ConversationMessage] = Field(default_factory=list)
    execution_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
    hibernated_at: Optional[str] = None
    stopped_at: Optional[str] = None
