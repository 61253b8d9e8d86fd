"""Gateway tests: response normalisation and best-effort provisioning helpers."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from agent_runtime.models import AgentConfig, AgentType
from agent_runtime.sandbox import (
    BaseSandboxGateway,
    E2BSandboxGateway,
    MockSandboxGateway,
    ProvisioningError,
    ReconnectError,
    SandboxCommunicationError,
    build_gateway,
    normalize_execution,
)


def test_system_exit_zero_is_success() -> None:
    raw = {
        "results": [],
        "logs": {"stdout": ['{"success": true, "output": "done"}\n'], "stderr": []},
        "error": {"name": "SystemExit", "value": "0", "traceback": ""},
    }
    result = normalize_execution(raw)
    assert result.success is True
    assert result.output == "done"
    assert result.error is None


def test_system_exit_nonzero_is_failure() -> None:
    result = normalize_execution({"error": {"name": "SystemExit", "value": "1"}})
    assert result.success is False
    assert result.error == "SystemExit: 1"


def test_embedded_json_failure_is_reported() -> None:
    raw = {"logs": {"stdout": ['{"success": false, "error": "RateLimitError: slow down"}']}}
    result = normalize_execution(raw)
    assert result.success is False
    assert result.error == "RateLimitError: slow down"


def test_embedded_json_found_in_last_stdout_line() -> None:
    raw = {
        "logs": {
            "stdout": [
                "warming up\n",
                'noise\n{"success": true, "output": {"answer": 42}}\n',
            ]
        }
    }
    result = normalize_execution(raw)
    assert result.success is True
    assert result.output == {"answer": 42}
    assert result.logs[0] == "warming up"


def test_results_used_when_no_embedded_json() -> None:
    raw = SimpleNamespace(
        results=[SimpleNamespace(text="3", json=None)],
        logs=SimpleNamespace(stdout=[], stderr=["DeprecationWarning: x\n"]),
        error=None,
    )
    result = normalize_execution(raw, execution_time=12.5)
    assert result.success is True
    assert result.output == "3"
    assert result.logs == ["[stderr] DeprecationWarning: x"]
    assert result.execution_time == 12.5


def test_runtime_error_without_output() -> None:
    raw = SimpleNamespace(
        results=[],
        logs=SimpleNamespace(stdout=[], stderr=[]),
        error=SimpleNamespace(name="ZeroDivisionError", value="division by zero", traceback="..."),
    )
    result = normalize_execution(raw)
    assert result.success is False
    assert result.output is None
    assert result.error == "ZeroDivisionError: division by zero"


def test_plain_stdout_becomes_output() -> None:
    result = normalize_execution({"logs": ["hello\n", "world\n"]})
    assert result.success is True
    assert result.output == "hello\nworld"
    assert result.logs == ["hello", "world"]


def test_build_gateway_prefers_e2b_when_key_present(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("E2B_API_KEY", "e2b_test")
    assert isinstance(build_gateway(), E2BSandboxGateway)
    monkeypatch.delenv("E2B_API_KEY")
    gateway = build_gateway()
    assert isinstance(gateway, MockSandboxGateway)
    assert gateway.simulated is True


@pytest.mark.asyncio
async def test_e2b_gateway_without_key_raises_provisioning_error() -> None:
    gateway = E2BSandboxGateway(api_key=None)
    with pytest.raises(ProvisioningError):
        await gateway.create_sandbox("owner-1")


class BrokenProvisioningGateway(MockSandboxGateway):
    async def _install(self, handle, packages):
        raise ConnectionError("pip mirror unreachable")

    async def _write_file(self, handle, path, content):
        raise PermissionError("read-only filesystem")


@pytest.mark.asyncio
async def test_provisioning_helpers_degrade_to_false() -> None:
    gateway = BrokenProvisioningGateway()
    handle = await gateway.create_sandbox("owner-1")
    assert await gateway.install_packages(handle, ["openai"]) is False
    assert await gateway.upload_file(handle, "/tmp/a.txt", "x") is False
    assert await gateway.download_file(handle, "/tmp/missing.txt") is None
    assert await gateway.install_packages(handle, []) is True


@pytest.mark.asyncio
async def test_mock_gateway_files_and_close() -> None:
    gateway = MockSandboxGateway()
    handle = await gateway.create_sandbox("owner-1")
    assert handle.sandbox_id.startswith("mock-")
    assert await gateway.upload_file(handle, "/data/in.csv", "a,b\n1,2\n") is True
    assert await gateway.download_file(handle, "/data/in.csv") == "a,b\n1,2\n"
    assert await gateway.set_environment_variables(handle, {"OPENAI_API_KEY": "sk-test"}) is True

    await gateway.close_sandbox("owner-1")
    await gateway.close_sandbox("owner-1")  # already closed
    assert gateway.get_sandbox("owner-1") is None
    with pytest.raises(ReconnectError):
        await gateway.connect_sandbox(handle.sandbox_id)
    with pytest.raises(SandboxCommunicationError):
        await gateway.execute_code(handle, "print(1)")


@pytest.mark.asyncio
async def test_close_all_sandboxes() -> None:
    gateway = MockSandboxGateway()
    first = await gateway.create_sandbox("a")
    second = await gateway.create_sandbox("b")
    await gateway.close_all_sandboxes()
    assert gateway.get_sandbox("a") is None and gateway.get_sandbox("b") is None
    for handle in (first, second):
        with pytest.raises(ReconnectError):
            await gateway.connect_sandbox(handle.sandbox_id)


class RecordingGateway(BaseSandboxGateway):
    """Fake provider that returns a canned raw response and records code."""

    def __init__(self, raw):
        super().__init__()
        self.raw = raw
        self.codes = []
        self.killed = []

    async def create_sandbox(self, owner_id, timeout_seconds=300, metadata=None):
        from agent_runtime.sandbox import SandboxHandle

        return self._register(SandboxHandle(sandbox_id=f"sbx-{owner_id}", owner_id=owner_id))

    async def _run(self, handle, code, language):
        self.codes.append((code, language))
        return self.raw

    async def _kill(self, handle):
        self.killed.append(handle.sandbox_id)


@pytest.mark.asyncio
async def test_run_once_tears_down_sandbox() -> None:
    raw = {
        "logs": {"stdout": ['{"success": true, "agent": "Crunch", "output": {"record_count": 2}}\n']},
        "error": {"name": "SystemExit", "value": "0"},
    }
    gateway = RecordingGateway(raw)
    config = AgentConfig(id="crunch", name="Crunch", type=AgentType.DATA_PROCESSOR)

    result = await gateway.run_once("oneshot-1", config, [1, 2])

    assert result.success is True
    assert result.output == {"record_count": 2}
    assert gateway.killed == ["sbx-oneshot-1"]
    assert gateway.get_sandbox("oneshot-1") is None
    code, language = gateway.codes[-1]
    assert language == "python"
    assert "AGENT_CONFIG" in code and "INPUT_DATA" in code


@pytest.mark.asyncio
async def test_run_once_rejects_unknown_language() -> None:
    gateway = RecordingGateway({})
    config = AgentConfig(id="crunch", name="Crunch")
    result = await gateway.run_once("oneshot-2", config, "x", language="ruby")
    assert result.success is False
    assert "Unsupported runtime language" in result.error
    assert gateway.codes == []
