"""
Tests for the sidecar ProcessSupervisor.

Process spawning, process killing and the HTTP preflight are replaced on the
instance so the state machine can be driven without a real interpreter.
"""

import asyncio
import itertools
from types import SimpleNamespace

import pytest

from tutor_runtime.core.errors import HealthCheckError
from tutor_runtime.core.index_store import InstalledBundleEntry
from tutor_runtime.core.process_supervisor import (
    ProcessSupervisor,
    RuntimeLaunchConfig,
    StderrTail,
    SupervisorState,
)
from tutor_runtime.core.sidecar_contract import PreflightResult

_pids = itertools.count(41000)


class FakeStream:
    def __init__(self, chunks):
        self.chunks = list(chunks)

    async def read(self, n):
        await asyncio.sleep(0)
        return self.chunks.pop(0) if self.chunks else b""


class FakeProcess:
    def __init__(self, stderr=None):
        self.pid = next(_pids)
        self.returncode = None
        self.stderr = stderr
        self._exited = asyncio.Event()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def exit(self, code=1):
        if self.returncode is None:
            self.returncode = code
        self._exited.set()

    def kill(self):
        self.exit(-9)


class Harness:
    """Records spawns and kills and answers preflight checks."""

    def __init__(self, supervisor, monkeypatch):
        self.supervisor = supervisor
        self.processes = []
        self.spawn_calls = []
        self.killed = []
        self.healthy = True
        self.health_gate = None
        self.stderr_chunks = None

        monkeypatch.setattr(supervisor, "_spawn_process", self.spawn)
        monkeypatch.setattr(supervisor, "_kill_process", self.kill)
        monkeypatch.setattr(supervisor.preflight_checker, "wait_healthy", self.wait_healthy)
        monkeypatch.setattr(supervisor.preflight_checker, "fetch_contract", self.fetch_contract)

    async def spawn(self, executable, args, cwd, env):
        self.spawn_calls.append((executable, args, cwd, env))
        stderr = FakeStream(self.stderr_chunks) if self.stderr_chunks else None
        process = FakeProcess(stderr=stderr)
        self.processes.append(process)
        return process

    async def kill(self, process, timeout=5.0):
        self.killed.append(process.pid)
        process.exit(-15)

    async def wait_healthy(self, timeout, is_alive=None):
        if self.health_gate is not None:
            await self.health_gate.wait()
        if not self.healthy:
            raise HealthCheckError("Sidecar health check timed out after 2.0s")

    async def fetch_contract(self):
        return SimpleNamespace(contract_version="v1")


@pytest.fixture
def runtime_root(settings, monkeypatch):
    monkeypatch.delenv("TUTOR_SIDECAR_ROOT", raising=False)
    monkeypatch.delenv("TUTOR_PYTHON", raising=False)
    root = settings.resolved_app_root.parent / "demo"
    entry = root / settings.sidecar_entry_file
    entry.parent.mkdir(parents=True)
    entry.write_text("app = None\n")
    return root


@pytest.fixture
def supervisor(settings, index_store):
    return ProcessSupervisor(settings, index_store)


def _config():
    return RuntimeLaunchConfig(python_path="/opt/python/bin/python3", llm_api_key="sk-test")


def test_stderr_tail_keeps_last_characters():
    tail = StderrTail(limit=10)
    tail.append("0123456789")
    tail.append("abc")

    assert tail.text == "3456789abc"
    assert len(tail) == 10


@pytest.mark.asyncio
async def test_start_spawns_uvicorn_and_reaches_running(supervisor, runtime_root, monkeypatch, settings):
    harness = Harness(supervisor, monkeypatch)

    result = await supervisor.start(_config())

    assert result.started
    assert result.pid == harness.processes[0].pid
    assert result.phase == "ready"
    assert result.contract_version == "v1"
    assert result.python_source == "config"
    assert result.runtime_source == "app"
    assert supervisor.state == SupervisorState.RUNNING

    executable, args, cwd, env = harness.spawn_calls[0]
    assert executable == "/opt/python/bin/python3"
    assert args[:3] == ["-m", "uvicorn", settings.sidecar_app_module]
    assert "--port" in args and str(settings.sidecar_port) in args
    assert cwd == runtime_root
    assert env["LLM_API_KEY"] == "sk-test"
    assert env["PORT"] == str(settings.sidecar_port)
    assert env["SESSIONS_DIR"] == str(settings.sessions_root)

    await supervisor.stop()


@pytest.mark.asyncio
async def test_concurrent_starts_share_one_spawn(supervisor, runtime_root, monkeypatch):
    harness = Harness(supervisor, monkeypatch)
    harness.health_gate = asyncio.Event()

    tasks = [asyncio.ensure_future(supervisor.start(_config())) for _ in range(3)]
    await asyncio.sleep(0.05)
    harness.health_gate.set()
    results = await asyncio.gather(*tasks)

    assert all(r.started for r in results)
    assert {r.pid for r in results} == {harness.processes[0].pid}
    assert supervisor.spawn_count == 1

    await supervisor.stop()


@pytest.mark.asyncio
async def test_live_sidecar_is_reverified_not_respawned(supervisor, runtime_root, monkeypatch):
    harness = Harness(supervisor, monkeypatch)
    await supervisor.start(_config())

    async def quick_run(timeout, is_alive=None):
        return PreflightResult(ok=True, phase="ready", status=200, contract_version="v1")

    monkeypatch.setattr(supervisor.preflight_checker, "run", quick_run)
    result = await supervisor.start(_config())

    assert result.started
    assert supervisor.spawn_count == 1
    assert result.pid == harness.processes[0].pid

    await supervisor.stop()


@pytest.mark.asyncio
async def test_failed_health_check_kills_process(supervisor, runtime_root, monkeypatch):
    harness = Harness(supervisor, monkeypatch)
    harness.healthy = False

    result = await supervisor.start(_config())

    assert not result.started
    assert result.failure_stage == "runtime_start"
    assert result.phase == "health"
    assert harness.killed == [harness.processes[0].pid]
    assert supervisor.state == SupervisorState.FAILED
    assert not supervisor.is_alive()


@pytest.mark.asyncio
async def test_missing_runtime_root_fails_without_spawning(supervisor, settings, monkeypatch):
    monkeypatch.delenv("TUTOR_SIDECAR_ROOT", raising=False)
    harness = Harness(supervisor, monkeypatch)

    result = await supervisor.start(_config())

    assert not result.started
    assert result.failure_stage == "runtime_start"
    assert settings.sidecar_entry_file in result.reason
    assert harness.spawn_calls == []


@pytest.mark.asyncio
async def test_spawn_error_is_reported(supervisor, runtime_root, monkeypatch):
    Harness(supervisor, monkeypatch)

    async def broken_spawn(executable, args, cwd, env):
        raise FileNotFoundError(executable)

    monkeypatch.setattr(supervisor, "_spawn_process", broken_spawn)
    result = await supervisor.start(_config())

    assert not result.started
    assert result.failure_stage == "runtime_start"
    assert "Failed to spawn" in result.reason
    assert supervisor.state == SupervisorState.FAILED


@pytest.mark.asyncio
async def test_invalid_launch_config_is_bootstrap_failure(supervisor):
    result = await supervisor.start({"llm_provider": "not-a-format"})

    assert not result.started
    assert result.failure_stage == "bootstrap"


@pytest.mark.asyncio
async def test_unexpected_exits_are_restarted_up_to_cap(
    supervisor, runtime_root, monkeypatch, settings, wait_until
):
    harness = Harness(supervisor, monkeypatch)
    states = []
    supervisor.state_events.subscribe(states.append)

    assert (await supervisor.start(_config())).started

    for spawned in range(1, settings.max_auto_restarts + 2):
        assert await wait_until(
            lambda: len(harness.processes) == spawned and supervisor.state == SupervisorState.RUNNING
        )
        harness.processes[-1].exit(1)

    assert await wait_until(lambda: supervisor.state == SupervisorState.FAILED)
    assert supervisor.spawn_count == settings.max_auto_restarts + 1
    assert supervisor.restart_attempts == settings.max_auto_restarts
    assert states.count(SupervisorState.RESTARTING) == settings.max_auto_restarts

    await asyncio.sleep(0.05)
    assert supervisor.spawn_count == settings.max_auto_restarts + 1


@pytest.mark.asyncio
async def test_stop_resets_restart_budget(supervisor, runtime_root, monkeypatch, wait_until):
    harness = Harness(supervisor, monkeypatch)
    await supervisor.start(_config())
    harness.processes[0].exit(1)
    assert await wait_until(lambda: len(harness.processes) == 2 and supervisor.state == SupervisorState.RUNNING)
    assert supervisor.restart_attempts == 1

    result = await supervisor.stop()

    assert result == {"stopped": True}
    assert supervisor.restart_attempts == 0
    assert supervisor.state == SupervisorState.STOPPED
    assert harness.killed == [harness.processes[1].pid]
    await asyncio.sleep(0.05)
    assert supervisor.spawn_count == 2


@pytest.mark.asyncio
async def test_stop_during_startup_cancels_pending_start(supervisor, runtime_root, monkeypatch, wait_until):
    harness = Harness(supervisor, monkeypatch)
    harness.health_gate = asyncio.Event()

    start_task = asyncio.ensure_future(supervisor.start(_config()))
    assert await wait_until(lambda: supervisor.state == SupervisorState.HEALTH_CHECK)
    await supervisor.stop()
    result = await start_task

    assert not result.started
    assert "cancelled" in result.reason
    assert harness.killed == [harness.processes[0].pid]
    assert supervisor.state == SupervisorState.STOPPED


@pytest.mark.asyncio
async def test_stderr_is_bounded_and_forwarded(settings, index_store, runtime_root, monkeypatch, wait_until):
    settings.stderr_tail_chars = 256
    supervisor = ProcessSupervisor(settings, index_store)
    harness = Harness(supervisor, monkeypatch)
    harness.stderr_chunks = [(f"line {i:04d}\n" * 10).encode() for i in range(20)]
    forwarded = []
    supervisor.stderr_events.subscribe(forwarded.append)

    await supervisor.start(_config())
    assert await wait_until(lambda: len(forwarded) == 20)

    assert len(supervisor.stderr_tail.text) == 256
    assert supervisor.stderr_tail.text.endswith("line 0019\n")

    await supervisor.stop()


@pytest.mark.asyncio
async def test_child_env_points_at_installed_bundles(supervisor, index_store, tmp_path):
    await index_store.put_entry("curriculum", "main", InstalledBundleEntry("1", str(tmp_path / "cur")))
    await index_store.put_entry("app_agents", "core", InstalledBundleEntry("1", str(tmp_path / "agents")))

    env = await supervisor.build_child_env(RuntimeLaunchConfig(llm_provider="openai", llm_api_key="k"))

    assert env["LLM_PROVIDER"] == "openai"
    assert env["CURRICULUM_DIR"] == str(tmp_path / "cur" / "content" / "curriculum")
    assert env["MAIN_AGENTS_DIR"] == str(tmp_path / "agents" / "content" / "agents")
    assert env["EXPERTS_DIR"] == ""
    assert env["PYTHONUNBUFFERED"] == "1"


@pytest.mark.asyncio
async def test_python_resolution_order(supervisor, settings, monkeypatch):
    monkeypatch.delenv("TUTOR_PYTHON", raising=False)

    assert await supervisor.resolve_python(_config()) == ("/opt/python/bin/python3", "config")

    monkeypatch.setenv("TUTOR_PYTHON", "/custom/python")
    assert await supervisor.resolve_python(RuntimeLaunchConfig()) == ("/custom/python", "env")

    monkeypatch.delenv("TUTOR_PYTHON")
    env_python = settings.env_dir / "bin" / "python"
    env_python.parent.mkdir(parents=True)
    env_python.write_text("")
    assert await supervisor.resolve_python(RuntimeLaunchConfig()) == (str(env_python), "conda_env")
