from __future__ import annotations

import asyncio
import json
import logging
import shlex
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from e2b_code_interpreter import AsyncSandbox

from .config import Settings, get_settings
from .mock_executor import mock_execute
from .models import AgentConfig, ConversationMessage, ExecutionResult, utc_now_iso
from .payloads import generate_contextual_payload, generate_init_payload, generate_runtime_payload

logger = logging.getLogger("agent-runtime")

# Language names accepted by the code interpreter's run_code.
_RUN_CODE_LANGUAGES = {"python": "python", "javascript": "js", "js": "js"}


class SandboxError(RuntimeError):
    """Base class for sandbox provider failures."""


class ProvisioningError(SandboxError):
    """The provider could not create a sandbox (credentials, network, quota)."""


class ReconnectError(SandboxError):
    """A previously known sandbox id no longer resolves."""


class SandboxCommunicationError(SandboxError):
    """The provider failed while running code in an existing sandbox."""


@dataclass
class SandboxHandle:
    """A live sandbox as seen by this process. `raw` is the provider object."""

    sandbox_id: str
    owner_id: str
    raw: Any = None
    created_at: str = field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RawExecution:
    """Provider response reduced to one shape before normalisation."""

    results: List[Any] = field(default_factory=list)
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None


def _as_lines(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _error_dict(error: Any) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    if isinstance(error, Mapping):
        return dict(error)
    if isinstance(error, str):
        return {"name": "Error", "value": error}
    return {
        "name": getattr(error, "name", type(error).__name__),
        "value": getattr(error, "value", str(error)),
        "traceback": getattr(error, "traceback", None),
    }


def coerce_raw_execution(raw: Any) -> RawExecution:
    """Accept a provider Execution object, a mapping, or bare stdout text."""
    if isinstance(raw, RawExecution):
        return raw
    if raw is None:
        return RawExecution()
    if isinstance(raw, str):
        return RawExecution(stdout=[raw])
    if isinstance(raw, Mapping):
        logs = raw.get("logs")
        if isinstance(logs, Mapping):
            stdout, stderr = logs.get("stdout"), logs.get("stderr")
        else:
            stdout, stderr = logs, None
        return RawExecution(
            results=list(raw.get("results") or []),
            stdout=_as_lines(stdout) + _as_lines(raw.get("stdout")),
            stderr=_as_lines(stderr) + _as_lines(raw.get("stderr")),
            error=_error_dict(raw.get("error")),
        )
    logs = getattr(raw, "logs", None)
    return RawExecution(
        results=list(getattr(raw, "results", None) or []),
        stdout=_as_lines(getattr(logs, "stdout", None)),
        stderr=_as_lines(getattr(logs, "stderr", None)),
        error=_error_dict(getattr(raw, "error", None)),
    )


def is_clean_exit(error: Optional[Mapping[str, Any]]) -> bool:
    """SystemExit(0) is how a script reports normal termination, not a failure."""
    if not error or error.get("name") != "SystemExit":
        return False
    return str(error.get("value")).strip() in ("0", "None", "")


def _describe_error(error: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not error:
        return None
    name = str(error.get("name") or "Error")
    value = error.get("value")
    return f"{name}: {value}" if value not in (None, "") else name


def _result_value(result: Any) -> Any:
    if isinstance(result, Mapping):
        for key in ("json", "text"):
            if result.get(key) is not None:
                return result[key]
        return dict(result)
    for attr in ("json", "text"):
        value = getattr(result, attr, None)
        if value is not None:
            return value
    return str(result)


def _parse_embedded(text: str) -> Optional[Dict[str, Any]]:
    text = text.strip()
    if not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict) and ("success" in parsed or "output" in parsed):
        return parsed
    return None


def find_embedded_result(stdout: Sequence[str]) -> Optional[Dict[str, Any]]:
    """A `{"success": ..., "output": ...}` document printed by the payload, if any."""
    if not stdout:
        return None
    embedded = _parse_embedded("".join(stdout))
    if embedded is not None:
        return embedded
    for chunk in reversed(stdout):
        for line in reversed(chunk.splitlines()):
            embedded = _parse_embedded(line)
            if embedded is not None:
                return embedded
    return None


def normalize_execution(raw: Any, execution_time: Optional[float] = None) -> ExecutionResult:
    """Collapse any provider response shape into an ExecutionResult."""
    execution = coerce_raw_execution(raw)
    exit_ok = execution.error is None or is_clean_exit(execution.error)

    logs = [line for chunk in execution.stdout for line in chunk.splitlines() if line.strip()]
    logs += [f"[stderr] {line}" for chunk in execution.stderr for line in chunk.splitlines() if line.strip()]

    error: Optional[str] = None
    embedded = find_embedded_result(execution.stdout)
    if embedded is not None:
        output = embedded["output"] if "output" in embedded else embedded
        success = exit_ok and embedded.get("success", True) is not False
        if embedded.get("error") is not None:
            error = str(embedded["error"])
    elif execution.results:
        values = [_result_value(r) for r in execution.results]
        output = values[0] if len(values) == 1 else values
        success = exit_ok
    elif execution.stdout:
        output = "".join(execution.stdout).strip()
        success = exit_ok
    else:
        output = None
        success = exit_ok

    if not success and error is None:
        error = _describe_error(execution.error) or "Execution failed"
    if success:
        error = None

    return ExecutionResult(
        success=success,
        output=output,
        error=error,
        logs=logs or None,
        execution_time=execution_time,
    )


class BaseSandboxGateway:
    """
    Single point of contact with a sandbox provider.

    Subclasses implement the provider primitives (`create_sandbox`,
    `connect_sandbox`, `_run`, `_kill`, ...). Everything returned to callers is
    already normalised to ExecutionResult.
    """

    simulated = False

    def __init__(self) -> None:
        # owner_id -> handle; bookkeeping only, never a source of truth.
        self._sandboxes: Dict[str, SandboxHandle] = {}

    def _register(self, handle: SandboxHandle) -> SandboxHandle:
        self._sandboxes[handle.owner_id] = handle
        return handle

    def get_sandbox(self, owner_id: str) -> Optional[SandboxHandle]:
        return self._sandboxes.get(owner_id)

    async def create_sandbox(
        self,
        owner_id: str,
        timeout_seconds: int = 300,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SandboxHandle:  # pragma: no cover - interface only
        raise NotImplementedError

    async def connect_sandbox(self, sandbox_id: str, owner_id: str = "") -> SandboxHandle:  # pragma: no cover
        raise NotImplementedError

    async def _run(self, handle: SandboxHandle, code: str, language: str) -> Any:  # pragma: no cover
        raise NotImplementedError

    async def _kill(self, handle: SandboxHandle) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def _kill_by_id(self, sandbox_id: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def _install(self, handle: SandboxHandle, packages: List[str]) -> bool:  # pragma: no cover
        raise NotImplementedError

    async def _write_file(self, handle: SandboxHandle, path: str, content: Any) -> None:  # pragma: no cover
        raise NotImplementedError

    async def _read_file(self, handle: SandboxHandle, path: str) -> str:  # pragma: no cover
        raise NotImplementedError

    async def execute_code(self, handle: SandboxHandle, code: str, language: str = "python") -> ExecutionResult:
        """
        Run code and wait for it to finish.

        Failures of the code itself come back as success=False. Failures of
        the provider raise SandboxCommunicationError so callers can drop the
        handle.
        """
        start = time.monotonic()
        try:
            raw = await self._run(handle, code, language)
        except SandboxError:
            raise
        except Exception as exc:
            logger.error("execute_code failed sandbox_id=%s: %s", handle.sandbox_id, exc)
            raise SandboxCommunicationError(f"Failed to execute code: {exc}") from exc
        return normalize_execution(raw, (time.monotonic() - start) * 1000.0)

    async def install_packages(self, handle: SandboxHandle, packages: List[str]) -> bool:
        if not packages:
            return True
        try:
            return await self._install(handle, packages)
        except Exception as exc:
            logger.warning("install_packages failed sandbox_id=%s packages=%s: %s", handle.sandbox_id, packages, exc)
            return False

    async def set_environment_variables(self, handle: SandboxHandle, env: Dict[str, str]) -> bool:
        if not env:
            return True
        code = f"import json, os\nos.environ.update(json.loads({json.dumps(json.dumps(env))}))\n"
        try:
            result = await self.execute_code(handle, code)
        except Exception as exc:
            logger.warning("set_environment_variables failed sandbox_id=%s: %s", handle.sandbox_id, exc)
            return False
        return result.success

    async def upload_file(self, handle: SandboxHandle, path: str, content: Any) -> bool:
        try:
            await self._write_file(handle, path, content)
        except Exception as exc:
            logger.warning("upload_file failed sandbox_id=%s path=%s: %s", handle.sandbox_id, path, exc)
            return False
        return True

    async def download_file(self, handle: SandboxHandle, path: str) -> Optional[str]:
        try:
            return await self._read_file(handle, path)
        except Exception as exc:
            logger.warning("download_file failed sandbox_id=%s path=%s: %s", handle.sandbox_id, path, exc)
            return None

    async def kill_sandbox(self, handle: SandboxHandle) -> None:
        """Terminate a sandbox; errors from an already dead process are ignored."""
        if self._sandboxes.get(handle.owner_id) is handle:
            del self._sandboxes[handle.owner_id]
        try:
            await self._kill(handle)
        except Exception as exc:
            logger.debug("kill_sandbox ignored error sandbox_id=%s: %s", handle.sandbox_id, exc)

    async def kill_sandbox_by_id(self, sandbox_id: str) -> None:
        for owner_id, handle in list(self._sandboxes.items()):
            if handle.sandbox_id == sandbox_id:
                del self._sandboxes[owner_id]
        try:
            await self._kill_by_id(sandbox_id)
        except Exception as exc:
            logger.debug("kill_sandbox_by_id ignored error sandbox_id=%s: %s", sandbox_id, exc)

    async def close_sandbox(self, owner_id: str) -> None:
        handle = self._sandboxes.get(owner_id)
        if handle is not None:
            await self.kill_sandbox(handle)

    async def close_all_sandboxes(self) -> None:
        await asyncio.gather(*(self.close_sandbox(owner_id) for owner_id in list(self._sandboxes)))

    async def initialize_agent(
        self,
        handle: SandboxHandle,
        config: AgentConfig,
        context: Sequence[ConversationMessage] = (),
    ) -> ExecutionResult:
        """Load the agent config and transcript into the sandbox interpreter."""
        return await self.execute_code(handle, generate_init_payload(config, context))

    async def execute_in_sandbox(
        self,
        handle: SandboxHandle,
        config: AgentConfig,
        input_text: str,
        context: Sequence[ConversationMessage] = (),
    ) -> ExecutionResult:
        return await self.execute_code(handle, generate_contextual_payload(config, input_text, context))

    async def run_once(
        self,
        owner_id: str,
        config: AgentConfig,
        input_data: Any,
        *,
        language: str = "python",
        env: Optional[Dict[str, str]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> ExecutionResult:
        """Ephemeral execution: fresh sandbox, one run, always torn down."""
        timeout_seconds = timeout_seconds or get_settings().sandbox_timeout_seconds
        handle: Optional[SandboxHandle] = None
        try:
            code = generate_runtime_payload(config, input_data, language)
            handle = await self.create_sandbox(owner_id, timeout_seconds=timeout_seconds)
            await self.set_environment_variables(handle, env or {})
            return await self.execute_code(handle, code, language)
        except Exception as exc:
            logger.error("run_once failed owner_id=%s: %s", owner_id, exc)
            return ExecutionResult(success=False, error=str(exc))
        finally:
            if handle is not None:
                await self.kill_sandbox(handle)


class E2BSandboxGateway(BaseSandboxGateway):
    """Gateway backed by E2B code-interpreter sandboxes."""

    def __init__(self, api_key: Optional[str]) -> None:
        super().__init__()
        self.api_key = api_key

    async def create_sandbox(
        self,
        owner_id: str,
        timeout_seconds: int = 300,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SandboxHandle:
        if not self.api_key:
            raise ProvisioningError("E2B_API_KEY is not configured")
        metadata = {str(k): str(v) for k, v in (metadata or {}).items()}
        try:
            sandbox = await AsyncSandbox.create(
                api_key=self.api_key,
                timeout=timeout_seconds,
                metadata=metadata,
            )
        except Exception as exc:
            logger.error("Failed to create E2B sandbox owner_id=%s: %s", owner_id, exc)
            raise ProvisioningError(f"Failed to create sandbox: {exc}") from exc
        logger.info("sandbox_created sandbox_id=%s owner_id=%s timeout=%s", sandbox.sandbox_id, owner_id, timeout_seconds)
        return self._register(
            SandboxHandle(sandbox_id=sandbox.sandbox_id, owner_id=owner_id, raw=sandbox, metadata=metadata)
        )

    async def connect_sandbox(self, sandbox_id: str, owner_id: str = "") -> SandboxHandle:
        if not self.api_key:
            raise ReconnectError("E2B_API_KEY is not configured")
        try:
            sandbox = await AsyncSandbox.connect(sandbox_id, api_key=self.api_key)
        except Exception as exc:
            raise ReconnectError(f"Failed to reconnect to sandbox {sandbox_id}: {exc}") from exc
        logger.info("sandbox_reconnected sandbox_id=%s", sandbox_id)
        return self._register(SandboxHandle(sandbox_id=sandbox_id, owner_id=owner_id or sandbox_id, raw=sandbox))

    async def _run(self, handle: SandboxHandle, code: str, language: str) -> Any:
        return await handle.raw.run_code(code, language=_RUN_CODE_LANGUAGES.get(language.lower(), language))

    async def _install(self, handle: SandboxHandle, packages: List[str]) -> bool:
        command = "pip install -q " + " ".join(shlex.quote(p) for p in packages)
        result = await handle.raw.commands.run(command)
        return result.exit_code == 0

    async def _write_file(self, handle: SandboxHandle, path: str, content: Any) -> None:
        await handle.raw.files.write(path, content)

    async def _read_file(self, handle: SandboxHandle, path: str) -> str:
        return await handle.raw.files.read(path)

    async def _kill(self, handle: SandboxHandle) -> None:
        await handle.raw.kill()

    async def _kill_by_id(self, sandbox_id: str) -> None:
        await AsyncSandbox.kill(sandbox_id, api_key=self.api_key)


class MockSandboxGateway(BaseSandboxGateway):
    """
    In-process stand-in used when no E2B key is configured.

    Sandbox ids are synthetic and only live as long as this object, so a
    restart behaves like the real provider losing its processes. Agent runs
    are answered by the mock executor.
    """

    simulated = True

    def __init__(self) -> None:
        super().__init__()
        self._live: Dict[str, Dict[str, Any]] = {}  # sandbox_id -> {path: content}

    async def create_sandbox(
        self,
        owner_id: str,
        timeout_seconds: int = 300,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SandboxHandle:
        sandbox_id = f"mock-{uuid.uuid4().hex[:12]}"
        self._live[sandbox_id] = {}
        return self._register(SandboxHandle(sandbox_id=sandbox_id, owner_id=owner_id, metadata=dict(metadata or {})))

    async def connect_sandbox(self, sandbox_id: str, owner_id: str = "") -> SandboxHandle:
        if sandbox_id not in self._live:
            raise ReconnectError(f"Sandbox {sandbox_id} not found")
        return self._register(SandboxHandle(sandbox_id=sandbox_id, owner_id=owner_id or sandbox_id))

    def _require_live(self, handle: SandboxHandle) -> Dict[str, Any]:
        files = self._live.get(handle.sandbox_id)
        if files is None:
            raise SandboxCommunicationError(f"Sandbox {handle.sandbox_id} is not running")
        return files

    async def _run(self, handle: SandboxHandle, code: str, language: str) -> Any:
        self._require_live(handle)
        return {"results": [], "logs": {"stdout": ["[simulation mode] code accepted\n"], "stderr": []}}

    async def _install(self, handle: SandboxHandle, packages: List[str]) -> bool:
        self._require_live(handle)
        return True

    async def _write_file(self, handle: SandboxHandle, path: str, content: Any) -> None:
        self._require_live(handle)[path] = content

    async def _read_file(self, handle: SandboxHandle, path: str) -> str:
        return self._require_live(handle)[path]

    async def _kill(self, handle: SandboxHandle) -> None:
        self._live.pop(handle.sandbox_id, None)

    async def _kill_by_id(self, sandbox_id: str) -> None:
        self._live.pop(sandbox_id, None)

    async def execute_in_sandbox(
        self,
        handle: SandboxHandle,
        config: AgentConfig,
        input_text: str,
        context: Sequence[ConversationMessage] = (),
    ) -> ExecutionResult:
        self._require_live(handle)
        return mock_execute(config, input_text, context)

    async def run_once(
        self,
        owner_id: str,
        config: AgentConfig,
        input_data: Any,
        *,
        language: str = "python",
        env: Optional[Dict[str, str]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> ExecutionResult:
        return mock_execute(config, input_data)


def build_gateway(settings: Optional[Settings] = None) -> BaseSandboxGateway:
    """Factory that chooses the E2B gateway, or the mock one without credentials."""
    settings = settings or get_settings()
    if settings.e2b_api_key:
        return E2BSandboxGateway(api_key=settings.e2b_api_key)
    logger.warning("E2B_API_KEY is not set - sandbox execution runs in simulation mode")
    return MockSandboxGateway()
