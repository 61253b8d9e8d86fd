"""
Normalise stored agent records into AgentConfig.

Agent rows come in two layouts: newer rows carry model/temperature/etc. as
top-level columns, older rows keep them in a camelCase `config` blob. Top-level
values win; everything else falls back to the blob and then to a default, so
downstream code never sees a missing field.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from .models import AgentConfig, AgentTool, AgentType, ExecutionMode, OutputFormat, SessionConfig

logger = logging.getLogger("agent-runtime")

DEFAULT_MODEL = "gpt-4"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000

# Checked top to bottom; the first rule with any matching capability wins.
CAPABILITY_RULES: Tuple[Tuple[Tuple[str, ...], AgentType], ...] = (
    (("data-analysis",), AgentType.ANALYZER),
    (("data-processing",), AgentType.DATA_PROCESSOR),
    (("automation",), AgentType.AUTOMATION),
    (("chat", "email"), AgentType.CHATBOT),
)


def infer_agent_type(capabilities: Optional[Iterable[str]]) -> AgentType:
    caps = set(capabilities or [])
    for names, agent_type in CAPABILITY_RULES:
        if caps.intersection(names):
            return agent_type
    return AgentType.CHATBOT


def _first(*values: Any) -> Any:
    """First value that is not None or empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _coerce_enum(enum_cls: Any, raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return enum_cls(str(raw).lower())
    except ValueError:
        return None


def _coerce_temperature(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_TEMPERATURE
    return min(max(value, 0.0), 2.0)


def _coerce_max_tokens(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_MAX_TOKENS
    return value if value > 0 else DEFAULT_MAX_TOKENS


def _coerce_tools(raw: Any) -> List[AgentTool]:
    tools: List[AgentTool] = []
    for item in raw or []:
        if not isinstance(item, Mapping):
            continue
        try:
            tools.append(AgentTool(**item))
        except ValidationError as exc:
            logger.warning("Ignoring malformed tool definition %r: %s", item.get("name"), exc)
    return tools


def resolve(record: Mapping[str, Any]) -> AgentConfig:
    """Build the canonical AgentConfig for a stored agent record."""
    config: Dict[str, Any] = record.get("config") if isinstance(record.get("config"), dict) else {}

    agent_type = _coerce_enum(AgentType, _first(config.get("type"), record.get("type")))
    if agent_type is None:
        agent_type = infer_agent_type(record.get("capabilities"))

    name = str(record.get("name") or config.get("name") or "Agent")
    temperature_raw = record.get("temperature")
    if temperature_raw is None:
        temperature_raw = config.get("temperature")

    return AgentConfig(
        id=str(record.get("id") or ""),
        name=name,
        type=agent_type,
        description=str(record.get("description") or ""),
        model=str(_first(record.get("model"), config.get("model")) or DEFAULT_MODEL),
        temperature=_coerce_temperature(temperature_raw),
        max_tokens=_coerce_max_tokens(
            _first(record.get("max_tokens"), config.get("maxTokens"), config.get("max_tokens"))
        ),
        system_prompt=str(
            _first(record.get("system_prompt"), config.get("systemPrompt"), config.get("system_prompt"))
            or f"You are {name}, a helpful AI assistant."
        ),
        tools=_coerce_tools(config.get("tools")),
        data_sources=[
            str(s)
            for s in (
                _first(record.get("knowledge_sources"), config.get("dataSources"), config.get("data_sources")) or []
            )
        ],
        schedule=config.get("schedule"),
        triggers=[t for t in config.get("triggers") or [] if isinstance(t, dict)],
        output_format=_coerce_enum(OutputFormat, _first(config.get("outputFormat"), config.get("output_format")))
        or OutputFormat.TEXT,
        settings=config.get("settings") if isinstance(config.get("settings"), dict) else {},
    )


def parse_session_config(raw: Any) -> SessionConfig:
    """Per-field defaults; a stored 0 is kept (0 minutes means hibernate immediately)."""
    if not isinstance(raw, Mapping):
        return SessionConfig()
    values: Dict[str, Any] = {}
    for field_name in SessionConfig.model_fields:
        if raw.get(field_name) is not None:
            values[field_name] = raw[field_name]
    try:
        return SessionConfig(**values)
    except ValidationError as exc:
        logger.warning("Invalid session_config %r, using defaults: %s", dict(raw), exc)
        return SessionConfig()


def parse_execution_mode(raw: Any) -> ExecutionMode:
    return _coerce_enum(ExecutionMode, raw) or ExecutionMode.EPHEMERAL
