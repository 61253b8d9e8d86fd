"""
Source text executed inside a sandbox.

Three payloads exist:
- the one-shot runtime (python or javascript), used by ephemeral execution;
- the init payload, which loads the agent config and transcript into a
  long-lived interpreter;
- the contextual payload, which sends system prompt, recent history and the
  new input to the model, in that order.

Host values are embedded as JSON literals and decoded in the sandbox, so user
text never has to be escaped into source code.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Sequence

from .models import AgentConfig, ConversationMessage
from .providers import match_provider

DEFAULT_HISTORY_LIMIT = 10


def _py_json(value: Any) -> str:
    """Python expression that evaluates to `value`."""
    return f"json.loads({json.dumps(json.dumps(value, default=str))})"


def _config_dict(config: AgentConfig) -> Dict[str, Any]:
    data = config.model_dump(mode="json")
    # The runtimes read camelCase keys for output format, matching stored legacy configs.
    data["outputFormat"] = data.pop("output_format")
    return data


_PYTHON_RUNTIME_BODY = '''
from datetime import datetime, timezone


def _now():
    return datetime.now(timezone.utc).isoformat()


def process_data(data):
    return {
        "processed_at": _now(),
        "record_count": len(data) if isinstance(data, list) else 1,
        "data": data,
    }


def analyze_data(data):
    return {
        "analyzed_at": _now(),
        "insights": [],
        "summary": "Analysis completed",
        "data_points": len(data) if isinstance(data, list) else 1,
    }


def automate_task(task):
    return {"task": task, "status": "completed", "executed_at": _now()}


def custom_execution(data):
    return {
        "message": "Agent %s executed successfully" % AGENT_CONFIG.get("name", "Unknown Agent"),
        "input_received": data,
        "timestamp": _now(),
    }


HANDLERS = {
    "data_processor": process_data,
    "analyzer": analyze_data,
    "automation": automate_task,
}


def to_markdown(data):
    md = "# Agent Output: %s\\n\\n" % AGENT_CONFIG.get("name")
    md += "**Type:** %s\\n" % AGENT_CONFIG.get("type")
    md += "**Timestamp:** %s\\n\\n" % _now()
    md += "## Results\\n\\n"
    md += "```json\\n%s\\n```\\n" % json.dumps(data, indent=2)
    return md


def format_output(output):
    fmt = AGENT_CONFIG.get("outputFormat", "text")
    if fmt == "json":
        return output
    if fmt == "text":
        return json.dumps(output, indent=2) if isinstance(output, dict) else str(output)
    if fmt == "markdown":
        return to_markdown(output)
    return output


def execute(data):
    result = {
        "success": True,
        "timestamp": _now(),
        "agent": AGENT_CONFIG.get("name"),
        "type": AGENT_CONFIG.get("type"),
        "output": None,
    }
    try:
        handler = HANDLERS.get(AGENT_CONFIG.get("type"), custom_execution)
        result["output"] = format_output(handler(data))
    except Exception as exc:
        result["success"] = False
        result["error"] = str(exc)
    return result


_result = execute(INPUT_DATA)
print(json.dumps(_result))
sys.exit(0 if _result.get("success") else 1)
'''


_JAVASCRIPT_RUNTIME_BODY = '''
const now = () => new Date().toISOString();

const handlers = {
  data_processor: (data) => ({
    processedAt: now(),
    recordCount: Array.isArray(data) ? data.length : 1,
    data,
  }),
  analyzer: (data) => ({
    analyzedAt: now(),
    insights: [],
    summary: "Analysis completed",
    dataPoints: Array.isArray(data) ? data.length : 1,
  }),
  automation: (task) => ({ task, status: "completed", executedAt: now() }),
};

const customExecution = (input) => ({
  message: `Agent ${agentConfig.name} executed successfully`,
  inputReceived: input,
  timestamp: now(),
});

function toMarkdown(data) {
  let md = `# Agent Output: ${agentConfig.name}\\n\\n`;
  md += `**Type:** ${agentConfig.type}\\n`;
  md += `**Timestamp:** ${now()}\\n\\n`;
  md += "## Results\\n\\n";
  md += "```json\\n" + JSON.stringify(data, null, 2) + "\\n```\\n";
  return md;
}

function formatOutput(output) {
  const fmt = agentConfig.outputFormat || "text";
  if (fmt === "json") return output;
  if (fmt === "text") return typeof output === "object" ? JSON.stringify(output, null, 2) : String(output);
  if (fmt === "markdown") return toMarkdown(output);
  return output;
}

const result = { success: true, timestamp: now(), agent: agentConfig.name, type: agentConfig.type, output: null };
try {
  const handler = handlers[agentConfig.type] || customExecution;
  result.output = formatOutput(handler(inputData));
} catch (error) {
  result.success = false;
  result.error = error.message;
}
console.log(JSON.stringify(result));
'''


def python_runtime(config: AgentConfig, input_data: Any) -> str:
    header = [
        "import json",
        "import sys",
        "",
        f"AGENT_CONFIG = {_py_json(_config_dict(config))}",
        f"INPUT_DATA = {_py_json(input_data)}",
    ]
    return "\n".join(header) + "\n" + _PYTHON_RUNTIME_BODY


def javascript_runtime(config: AgentConfig, input_data: Any) -> str:
    header = [
        f"const agentConfig = {json.dumps(_config_dict(config), default=str)};",
        f"const inputData = {json.dumps(input_data, default=str)};",
    ]
    return "\n".join(header) + "\n" + _JAVASCRIPT_RUNTIME_BODY


RUNTIME_GENERATORS: Dict[str, Callable[[AgentConfig, Any], str]] = {
    "python": python_runtime,
    "javascript": javascript_runtime,
}


def generate_runtime_payload(config: AgentConfig, input_data: Any, language: str = "python") -> str:
    """One-shot runtime for `language`; raises ValueError for unsupported languages."""
    generator = RUNTIME_GENERATORS.get(language.lower())
    if generator is None:
        raise ValueError(f"Unsupported runtime language: {language}")
    return generator(config, input_data)


# Shared by the init and contextual payloads. Picks the client from the
# provider the host resolved for the model name.
_PY_LLM_CLIENT = '''
import os


def init_llm(provider_name):
    if provider_name == "openai":
        key = os.environ.get("OPENAI_API_KEY")
        if not key:
            return None
        from openai import OpenAI
        return OpenAI(api_key=key)
    if provider_name == "anthropic":
        key = os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            return None
        from anthropic import Anthropic
        return Anthropic(api_key=key)
    return None


if globals().get("CLIENT") is None:
    CLIENT = init_llm(PROVIDER)
'''


def generate_init_payload(config: AgentConfig, context: Sequence[ConversationMessage] = ()) -> str:
    header = [
        "import json",
        "",
        f"AGENT_CONFIG = {_py_json(_config_dict(config))}",
        f"CONVERSATION_CONTEXT = {_py_json([m.model_dump() for m in context])}",
        f"PROVIDER = {json.dumps(match_provider(config.model).name)}",
        "CLIENT = None",
    ]
    footer = [
        "",
        'print("Agent %s initialized in persistent session" % AGENT_CONFIG["name"])',
        'print("Context messages: %d" % len(CONVERSATION_CONTEXT))',
    ]
    return "\n".join(header) + "\n" + _PY_LLM_CLIENT + "\n".join(footer) + "\n"


def build_context_messages(
    config: AgentConfig,
    input_text: str,
    context: Sequence[ConversationMessage],
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> List[Dict[str, str]]:
    """System prompt, then the last `history_limit` context messages, then the new input."""
    messages = [{"role": "system", "content": config.system_prompt}]
    history = list(context)[-history_limit:] if history_limit > 0 else []
    messages.extend({"role": m.role, "content": m.content} for m in history)
    messages.append({"role": "user", "content": input_text})
    return messages


_PY_CONTEXTUAL_BODY = '''

def execute_with_context(messages):
    if CLIENT is None:
        raise RuntimeError("LLM provider not initialized for %s" % PROVIDER)
    if PROVIDER == "anthropic":
        response = CLIENT.messages.create(
            model=MODEL,
            system=messages[0]["content"],
            messages=messages[1:],
            temperature=TEMPERATURE,
            max_tokens=MAX_TOKENS,
        )
        return response.content[0].text
    response = CLIENT.chat.completions.create(
        model=MODEL,
        messages=messages,
        temperature=TEMPERATURE,
        max_tokens=MAX_TOKENS,
    )
    return response.choices[0].message.content


try:
    print(json.dumps({"success": True, "output": execute_with_context(MESSAGES)}))
except Exception as exc:
    print(json.dumps({"success": False, "error": "%s: %s" % (type(exc).__name__, exc)}))
'''


def generate_contextual_payload(
    config: AgentConfig,
    input_text: str,
    context: Sequence[ConversationMessage] = (),
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> str:
    header = [
        "import json",
        "",
        f"MESSAGES = {_py_json(build_context_messages(config, input_text, context, history_limit))}",
        f"MODEL = {json.dumps(config.model)}",
        f"TEMPERATURE = {config.temperature!r}",
        f"MAX_TOKENS = {config.max_tokens!r}",
        f"PROVIDER = {json.dumps(match_provider(config.model).name)}",
    ]
    return "\n".join(header) + "\n" + _PY_LLM_CLIENT + _PY_CONTEXTUAL_BODY
