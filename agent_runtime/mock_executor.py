"""
Offline stand-in for sandbox execution, used when E2B is not configured.

Outputs are deterministic and always labelled as simulated, so a fallback
response is never mistaken for a real model answer.
"""

from __future__ import annotations

import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import AgentConfig, AgentType, ConversationMessage, ExecutionResult, utc_now_iso

SIMULATION_NOTE = "This is a simulated response (simulation mode). Configure E2B_API_KEY for real execution."

# Phrase is case-insensitive; the name itself must be capitalised ("I'm fine" is not a name).
_NAME_PATTERN = re.compile(r"(?i:\b(?:i'm|i\u2019m|i am|my name is|call me))\s+([A-Z][\w'-]*)")
_NAME_QUESTION = re.compile(r"\bwhat(?:'s|\u2019s| is)\s+my\s+name\b", re.IGNORECASE)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


def stated_name(text: str) -> Optional[str]:
    match = _NAME_PATTERN.search(text or "")
    return match.group(1) if match else None


def recall_name(input_text: str, context: Sequence[ConversationMessage]) -> Optional[str]:
    """Most recent name the user gave, looking at the new input first."""
    name = stated_name(input_text)
    if name:
        return name
    for message in reversed(list(context)):
        if message.role == "user":
            name = stated_name(message.content)
            if name:
                return name
    return None


def _data_processor(config: AgentConfig, input_data: Any, context: Sequence[ConversationMessage]) -> Any:
    text = _text(input_data)
    return {
        "processed": True,
        "inputLength": len(text),
        "summary": f"Processed {len(text)} characters of input",
        "timestamp": utc_now_iso(),
        "note": SIMULATION_NOTE,
    }


def _analyzer(config: AgentConfig, input_data: Any, context: Sequence[ConversationMessage]) -> Any:
    return {
        "analysis": f"Analysis of: {_text(input_data)[:100]}",
        "insights": [
            "Pattern detected in input data",
            "Recommendation: review the highlighted records",
            "Confidence level: high",
        ],
        "confidence": 0.95,
        "note": SIMULATION_NOTE,
    }


def _chatbot(config: AgentConfig, input_data: Any, context: Sequence[ConversationMessage]) -> Any:
    text = _text(input_data)
    suffix = "(Running in simulation mode - configure E2B_API_KEY for real responses.)"
    if _NAME_QUESTION.search(text):
        name = recall_name("", context)
        if name:
            return f"Your name is {name}. {suffix}"
        return f"I don't know your name yet. Tell me by saying \"I'm <name>\". {suffix}"
    name = stated_name(text)
    if name:
        return f"Nice to meet you, {name}! I'm {config.name}. {suffix}"
    history = f" We have exchanged {len(context)} messages so far." if context else ""
    return f"Hello! I'm {config.name}. You said: \"{text}\".{history} {suffix}"


def _automation(config: AgentConfig, input_data: Any, context: Sequence[ConversationMessage]) -> Any:
    return {
        "task": _text(input_data),
        "status": "completed",
        "actions": ["Parsed task description", "Planned execution steps", "Executed simulated actions"],
        "note": SIMULATION_NOTE,
    }


def _custom(config: AgentConfig, input_data: Any, context: Sequence[ConversationMessage]) -> Any:
    return {
        "message": f"Agent {config.name} executed successfully",
        "input": input_data,
        "agentType": config.type.value,
        "config": {"model": config.model, "temperature": config.temperature},
        "note": SIMULATION_NOTE,
    }


MockHandler = Callable[[AgentConfig, Any, Sequence[ConversationMessage]], Any]

HANDLERS: Dict[AgentType, MockHandler] = {
    AgentType.DATA_PROCESSOR: _data_processor,
    AgentType.ANALYZER: _analyzer,
    AgentType.CHATBOT: _chatbot,
    AgentType.AUTOMATION: _automation,
    AgentType.CUSTOM: _custom,
}


def mock_execute(
    config: AgentConfig,
    input_data: Any,
    context: Optional[Sequence[ConversationMessage]] = None,
) -> ExecutionResult:
    start = time.monotonic()
    context = list(context or [])
    handler = HANDLERS.get(config.type, _custom)
    output = handler(config, input_data, context)
    now = utc_now_iso()
    logs: List[str] = [
        f"[{now}] E2B not configured - running in simulation mode",
        f"[{now}] Agent: {config.name} ({config.type.value})",
        f"[{now}] Context messages: {len(context)}",
        f"[{now}] To enable real sandbox execution, configure E2B_API_KEY",
    ]
    return ExecutionResult(
        success=True,
        output=output,
        logs=logs,
        execution_time=(time.monotonic() - start) * 1000.0,
    )
