"""
Process Supervisor - Lifecycle of the local sidecar HTTP process.
=================================================================

State machine:

    stopped -> starting -> health_check -> contract_check -> running
    running --(unexpected exit)--> restarting -> starting   (bounded)
    running --(unexpected exit, cap reached)--> failed
    any --stop()--> stopped

Features:
- At most one live sidecar; concurrent start() calls share one attempt
- A live handle is re-verified with a fast preflight instead of respawning
- Executable resolution: config -> TUTOR_PYTHON -> conda env -> bundled
  runtime -> system PATH
- stderr kept as a bounded tail and forwarded to subscribers
- Health + contract gated startup; a failed preflight kills the new process
- Automatic restarts capped per supervisor lifetime, reset by a successful
  caller-initiated start or an explicit stop
- Process tree termination through psutil (terminate, then kill)
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import aiohttp
import psutil
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from tutor_runtime.config.settings import RuntimeSettings
from tutor_runtime.core.errors import (
    ContractMismatchError,
    HealthCheckError,
    ProcessSpawnError,
)
from tutor_runtime.core.events import EventChannel
from tutor_runtime.core.index_store import LocalIndexStore
from tutor_runtime.core.provisioner import env_python_path
from tutor_runtime.core.sidecar_contract import PreflightResult, SidecarPreflight
from tutor_runtime.core.update_manager import PYTHON_RUNTIME_BUNDLE

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    HEALTH_CHECK = "health_check"
    CONTRACT_CHECK = "contract_check"
    RUNNING = "running"
    RESTARTING = "restarting"
    FAILED = "failed"


class RuntimeLaunchConfig(BaseModel):
    """Caller-supplied launch parameters, consumed once per start."""

    model_config = ConfigDict(extra="ignore")

    python_path: Optional[str] = None
    llm_provider: Literal["anthropic", "openai", "custom"] = "custom"
    llm_api_key: str = ""
    llm_model: Optional[str] = None
    llm_base_url: Optional[str] = None


@dataclass
class StartResult:
    started: bool
    pid: Optional[int] = None
    reason: Optional[str] = None
    failure_stage: Optional[str] = None  # sidecar | bootstrap | runtime_start
    stderr: Optional[str] = None
    python_source: Optional[str] = None
    runtime_source: Optional[str] = None
    contract_version: Optional[str] = None
    phase: Optional[str] = None  # health | contract | ready

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class StderrTail:
    """Keeps only the last ``limit`` characters written to it."""

    def __init__(self, limit: int = 8000):
        self.limit = limit
        self._buffer = ""

    def append(self, text: str) -> None:
        self._buffer = (self._buffer + text)[-self.limit:]

    def clear(self) -> None:
        self._buffer = ""

    @property
    def text(self) -> str:
        return self._buffer

    def __len__(self) -> int:
        return len(self._buffer)


@dataclass
class SidecarHandle:
    process: Any  # asyncio.subprocess.Process
    python_path: str
    python_source: str
    runtime_root: Path
    runtime_source: str
    intentional_stop: bool = False
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


def kill_process_tree(pid: int, timeout: float = 5.0) -> bool:
    """
    Terminate a process and all its children; SIGKILL survivors.

    Returns True once nothing is left running.
    """
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)

        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass
        parent.terminate()

        gone, alive = psutil.wait_procs([parent] + children, timeout=timeout)
        for proc in alive:
            try:
                logger.warning(f"[Supervisor] Force killing stuck process PID {proc.pid}")
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(alive, timeout=2.0)
        return True

    except psutil.NoSuchProcess:
        return True
    except psutil.Error as e:
        logger.error(f"[Supervisor] Error killing process tree {pid}: {e}")
        return False


class ProcessSupervisor:
    """Owns the single sidecar process for the application session."""

    def __init__(
        self,
        settings: RuntimeSettings,
        index_store: LocalIndexStore,
    ):
        self.settings = settings
        self.index_store = index_store

        self.state = SupervisorState.STOPPED
        self.restart_attempts = 0
        self.stderr_tail = StderrTail(settings.stderr_tail_chars)
        self.stderr_events: EventChannel[str] = EventChannel("sidecar-stderr")
        self.state_events: EventChannel[SupervisorState] = EventChannel("sidecar-state", history=32)

        self._handle: Optional[SidecarHandle] = None
        self._start_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._last_config: Optional[RuntimeLaunchConfig] = None
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._spawn_count = 0

        self.preflight_checker = SidecarPreflight(
            settings.sidecar_base_url,
            self._get_http_session,
            poll_interval=settings.health_poll_interval,
            contract_timeout=settings.contract_timeout,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    def _set_state(self, state: SupervisorState) -> None:
        if state == self.state:
            return
        logger.info(f"[Supervisor] {self.state.value} -> {state.value}")
        self.state = state
        self.state_events.emit(state)

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    @property
    def spawn_count(self) -> int:
        return self._spawn_count

    def is_alive(self) -> bool:
        return self._handle is not None and self._handle.alive

    def status(self) -> Dict[str, Any]:
        handle = self._handle
        return {
            "state": self.state.value,
            "pid": handle.pid if handle else None,
            "alive": self.is_alive(),
            "restart_attempts": self.restart_attempts,
            "python_source": handle.python_source if handle else None,
            "runtime_source": handle.runtime_source if handle else None,
            "base_url": self.settings.sidecar_base_url,
        }

    # =========================================================================
    # Resolution
    # =========================================================================

    async def _bundled_runtime_dir(self) -> Optional[Path]:
        path = await self.index_store.resolve_path(PYTHON_RUNTIME_BUNDLE)
        return path if path is not None and path.exists() else None

    async def resolve_python(self, config: RuntimeLaunchConfig) -> Tuple[str, str]:
        """Returns (executable, source)."""
        if config.python_path:
            return config.python_path, "config"

        override = os.environ.get("TUTOR_PYTHON", "").strip()
        if override:
            return override, "env"

        env_python = env_python_path(self.settings.env_dir)
        if env_python.exists():
            return str(env_python), "conda_env"

        bundle = await self._bundled_runtime_dir()
        if bundle is not None:
            for candidate in (
                bundle / "python" / "bin" / "python3",
                bundle / "python" / "python.exe",
                bundle / "bin" / "python3",
            ):
                if candidate.exists():
                    return str(candidate), "bundled"

        system = shutil.which("python3") or shutil.which("python") or "python"
        return system, "system"

    async def resolve_runtime_root(self) -> Optional[Tuple[Path, str]]:
        """First candidate directory holding the sidecar entry file."""
        candidates: List[Tuple[Path, str]] = []
        env_root = os.environ.get("TUTOR_SIDECAR_ROOT", "").strip()
        if env_root:
            candidates.append((Path(env_root).expanduser().resolve(), "env"))

        bundle = await self._bundled_runtime_dir()
        if bundle is not None:
            candidates.append((bundle, "bundle"))
            candidates.append((bundle / "sidecar", "bundle"))

        app_root = self.settings.resolved_app_root
        candidates.append((app_root.parent / "demo", "app"))
        candidates.append((app_root.parent, "app"))

        for candidate, source in candidates:
            if (candidate / self.settings.sidecar_entry_file).is_file():
                return candidate, source
        return None

    async def build_child_env(self, config: RuntimeLaunchConfig) -> Dict[str, str]:
        index = await self.index_store.get()
        curriculum = index.first_entry("curriculum")
        experts = index.first_entry("experts")
        app_agents = index.first_entry("app_agents")

        self.settings.sessions_root.mkdir(parents=True, exist_ok=True)

        env = dict(os.environ)
        env.update(
            {
                "LLM_PROVIDER": config.llm_provider,
                "LLM_API_KEY": config.llm_api_key,
                "LLM_MODEL": config.llm_model or "",
                "LLM_BASE_URL": config.llm_base_url or "",
                "CURRICULUM_DIR": str(Path(curriculum.path) / "content" / "curriculum") if curriculum else "",
                "EXPERTS_DIR": str(Path(experts.path) / "experts") if experts else "",
                "MAIN_AGENTS_DIR": (
                    str(Path(app_agents.path) / "content" / "agents")
                    if app_agents
                    else os.environ.get("MAIN_AGENTS_DIR", "")
                ),
                "SESSIONS_DIR": str(self.settings.sessions_root),
                "HOST": self.settings.sidecar_host,
                "PORT": str(self.settings.sidecar_port),
                "TUTOR_ROOT": str(self.settings.tutor_root),
                "PYTHONUNBUFFERED": "1",
            }
        )
        return env

    # =========================================================================
    # Process seams
    # =========================================================================

    async def _spawn_process(
        self,
        executable: str,
        args: List[str],
        cwd: Path,
        env: Dict[str, str],
    ) -> Any:
        kwargs: Dict[str, Any] = {}
        if platform.system() != "Windows":
            kwargs["start_new_session"] = True
        return await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )

    async def _kill_process(self, process: Any, timeout: float = 5.0) -> None:
        if process.returncode is not None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, kill_process_tree, process.pid, timeout)
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Supervisor] PID {process.pid} did not exit, sending kill")
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _read_stderr(self, handle: SidecarHandle) -> None:
        stream = getattr(handle.process, "stderr", None)
        if stream is None:
            return
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                text = chunk.decode(errors="replace")
                self.stderr_tail.append(text)
                self.stderr_events.emit(text)
                for line in text.splitlines():
                    lower = line.lower()
                    if "error" in lower or "exception" in lower or "traceback" in lower:
                        logger.error(f"[Sidecar:stderr] {line}")
                    elif "warning" in lower:
                        logger.warning(f"[Sidecar:stderr] {line}")
                    elif line.strip():
                        logger.debug(f"[Sidecar:stderr] {line}")
        except asyncio.CancelledError:
            raise
        except (OSError, ValueError) as e:
            logger.debug(f"[Supervisor] stderr reader error: {e}")

    async def _watch(self, handle: SidecarHandle) -> None:
        returncode = await handle.process.wait()
        self._on_exit(handle, returncode)

    def _on_exit(self, handle: SidecarHandle, returncode: Optional[int]) -> None:
        if handle.intentional_stop or handle is not self._handle:
            return
        self._handle = None
        logger.warning(f"[Supervisor] Sidecar PID {handle.pid} exited unexpectedly (code {returncode})")
        if self.state != SupervisorState.RUNNING:
            # Startup in progress; the preflight notices the exit itself.
            return
        self._schedule_restart()

    # =========================================================================
    # Auto-restart
    # =========================================================================

    def _schedule_restart(self) -> None:
        if self.restart_attempts >= self.settings.max_auto_restarts:
            logger.error(
                f"[Supervisor] Restart cap reached ({self.restart_attempts}/"
                f"{self.settings.max_auto_restarts}), giving up"
            )
            self._set_state(SupervisorState.FAILED)
            return
        self.restart_attempts += 1
        self._set_state(SupervisorState.RESTARTING)
        logger.info(
            f"[Supervisor] Scheduling restart {self.restart_attempts}/"
            f"{self.settings.max_auto_restarts} in {self.settings.restart_delay}s"
        )
        self._restart_task = asyncio.ensure_future(self._auto_restart())

    async def _auto_restart(self) -> None:
        await asyncio.sleep(self.settings.restart_delay)
        config = self._last_config or RuntimeLaunchConfig()
        result = await self._join_start(config, caller_initiated=False)
        if result.started or self.state == SupervisorState.STOPPED:
            return
        logger.warning(f"[Supervisor] Automatic restart failed: {result.reason}")
        self._schedule_restart()

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # =========================================================================
    # Public API
    # =========================================================================

    async def start(
        self,
        config: Union[RuntimeLaunchConfig, Dict[str, Any], None] = None,
    ) -> StartResult:
        """Start (or re-verify) the sidecar. Never raises."""
        try:
            if not isinstance(config, RuntimeLaunchConfig):
                config = RuntimeLaunchConfig.model_validate(config or {})
        except PydanticValidationError as e:
            return StartResult(
                started=False,
                reason=f"Invalid launch config: {e}",
                failure_stage="bootstrap",
            )

        self._cancel_restart()
        return await self._join_start(config, caller_initiated=True)

    async def _join_start(self, config: RuntimeLaunchConfig, caller_initiated: bool) -> StartResult:
        if self._start_task is None or self._start_task.done():
            self._start_task = asyncio.ensure_future(self._start(config, caller_initiated))
        task = self._start_task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return StartResult(
                    started=False,
                    reason="Start cancelled by stop()",
                    failure_stage="runtime_start",
                )
            raise

    async def _start(self, config: RuntimeLaunchConfig, caller_initiated: bool) -> StartResult:
        self._last_config = config

        # Live handle: re-verify instead of respawning
        handle = self._handle
        if handle is not None and handle.alive:
            quick = await self.preflight_checker.run(
                self.settings.fast_health_timeout, is_alive=lambda: handle.alive
            )
            if quick.ok:
                if caller_initiated:
                    self.restart_attempts = 0
                self._set_state(SupervisorState.RUNNING)
                return StartResult(
                    started=True,
                    pid=handle.pid,
                    python_source=handle.python_source,
                    runtime_source=handle.runtime_source,
                    contract_version=quick.contract_version,
                    phase="ready",
                )
            logger.info(f"[Supervisor] Existing sidecar failed re-check ({quick.reason}), respawning")
            await self._discard_handle(handle)

        self._set_state(SupervisorState.STARTING)

        python_path, python_source = await self.resolve_python(config)
        root = await self.resolve_runtime_root()
        if root is None:
            self._set_state(SupervisorState.FAILED)
            return StartResult(
                started=False,
                reason=f"Cannot locate sidecar runtime root containing {self.settings.sidecar_entry_file}",
                failure_stage="runtime_start",
                python_source=python_source,
            )
        runtime_root, runtime_source = root

        env = await self.build_child_env(config)
        args = [
            "-m",
            "uvicorn",
            self.settings.sidecar_app_module,
            "--host",
            self.settings.sidecar_host,
            "--port",
            str(self.settings.sidecar_port),
        ]

        self.stderr_tail.clear()
        try:
            process = await self._spawn_process(python_path, args, runtime_root, env)
        except OSError as e:
            error = ProcessSpawnError(f"Failed to spawn sidecar with {python_path}: {e}")
            logger.error(f"[Supervisor] {error.message}")
            self._set_state(SupervisorState.FAILED)
            return StartResult(
                started=False,
                reason=error.message,
                failure_stage="runtime_start",
                python_source=python_source,
                runtime_source=runtime_source,
            )

        self._spawn_count += 1
        handle = SidecarHandle(
            process=process,
            python_path=python_path,
            python_source=python_source,
            runtime_root=runtime_root,
            runtime_source=runtime_source,
        )
        self._handle = handle
        handle.tasks.append(asyncio.ensure_future(self._read_stderr(handle)))
        handle.tasks.append(asyncio.ensure_future(self._watch(handle)))
        logger.info(
            f"[Supervisor] Spawned sidecar PID {handle.pid} "
            f"(python={python_source}, root={runtime_source}:{runtime_root})"
        )

        preflight = await self._startup_preflight(handle)
        if not preflight.ok:
            logger.error(f"[Supervisor] Preflight failed at {preflight.phase}: {preflight.reason}")
            await self._discard_handle(handle)
            self._set_state(SupervisorState.FAILED)
            return StartResult(
                started=False,
                pid=handle.pid,
                reason=preflight.reason,
                failure_stage="runtime_start",
                stderr=self.stderr_tail.text,
                python_source=python_source,
                runtime_source=runtime_source,
                contract_version=preflight.contract_version,
                phase=preflight.phase,
            )

        if caller_initiated:
            self.restart_attempts = 0
        self._set_state(SupervisorState.RUNNING)
        return StartResult(
            started=True,
            pid=handle.pid,
            python_source=python_source,
            runtime_source=runtime_source,
            contract_version=preflight.contract_version,
            phase="ready",
        )

    async def _startup_preflight(self, handle: SidecarHandle) -> PreflightResult:
        self._set_state(SupervisorState.HEALTH_CHECK)
        try:
            await self.preflight_checker.wait_healthy(
                self.settings.health_timeout, is_alive=lambda: handle.alive
            )
        except HealthCheckError as e:
            return PreflightResult(ok=False, phase="health", reason=e.message, status=e.status, error=e)

        self._set_state(SupervisorState.CONTRACT_CHECK)
        try:
            contract = await self.preflight_checker.fetch_contract()
        except ContractMismatchError as e:
            return PreflightResult(
                ok=False,
                phase="contract",
                reason=e.message,
                status=e.status,
                contract_version=e.details.get("contract_version"),
                error=e,
            )
        return PreflightResult(ok=True, phase="ready", status=200, contract_version=contract.contract_version)

    async def _discard_handle(self, handle: SidecarHandle) -> None:
        handle.intentional_stop = True
        if self._handle is handle:
            self._handle = None
        await self._kill_process(handle.process)
        for task in handle.tasks:
            if not task.done():
                task.cancel()

    async def stop(self) -> Dict[str, Any]:
        """Stop the sidecar from any state and reset the restart budget."""
        self._cancel_restart()
        start_task = self._start_task
        if start_task is not None and not start_task.done():
            start_task.cancel()

        handle = self._handle
        if handle is not None:
            logger.info(f"[Supervisor] Stopping sidecar PID {handle.pid}")
            await self._discard_handle(handle)

        self.restart_attempts = 0
        self._set_state(SupervisorState.STOPPED)
        return {"stopped": True}

    async def health(self) -> Dict[str, Any]:
        """Single /health probe."""
        healthy, status, error = await self.preflight_checker.probe_health()
        if healthy:
            return {"healthy": True, "status": status}
        return {
            "healthy": False,
            "status": status,
            "error": error,
            "stderr": self.stderr_tail.text,
        }

    async def preflight(self, timeout: Optional[float] = None) -> PreflightResult:
        """On-demand health + contract check against the running sidecar."""
        handle = self._handle
        is_alive = (lambda: handle.alive) if handle is not None else None
        return await self.preflight_checker.run(
            timeout if timeout is not None else self.settings.fast_health_timeout,
            is_alive=is_alive,
        )

    async def close(self) -> None:
        await self.stop()
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
