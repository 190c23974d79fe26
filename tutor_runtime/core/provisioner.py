"""
Environment Provisioner - Build the sidecar's Python environment from scratch.
==============================================================================

Linear, idempotent phases. Each phase checks its completion marker first and
is skipped when satisfied, so a fully provisioned machine returns ``done``
without touching the network or running any installer.

    checking          inspect markers
    downloading_base  fetch the base runtime installer (Miniconda)
    installing_base   run the installer into runtime/miniconda
    creating_env      conda create -p runtime/envs/sidecar python=X
    downloading_code  install the python_runtime bundle (BundleInstaller)
    installing_deps   pip install -r requirements.txt into the env
    done

Failures stop at ``error`` and leave completed phases in place; the next call
resumes from the first unsatisfied marker. Concurrent callers share one run.

Progress:
    Each ProvisioningEvent carries a phase-local percent (monotonic within the
    phase) and an overall percent mapped into the phase's fixed sub-range.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
import shutil
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os

from tutor_runtime.config.settings import RuntimeSettings
from tutor_runtime.core.backend_client import BackendClient, RemoteRuntimeConfig
from tutor_runtime.core.bundle_installer import BundleInstaller
from tutor_runtime.core.downloader import DownloadProgress, is_remote_url, stream_download
from tutor_runtime.core.errors import (
    ProvisioningError,
    RuntimeOrchestrationError,
)
from tutor_runtime.core.events import EventChannel
from tutor_runtime.core.index_store import LocalIndexStore, utc_now_iso
from tutor_runtime.core.update_manager import PYTHON_RUNTIME_BUNDLE, UpdateManager

logger = logging.getLogger(__name__)

DEPS_MARKER_NAME = ".sidecar_deps.json"
_OUTPUT_TAIL_LINES = 40


def env_python_path(env_dir: Path) -> Path:
    """Interpreter inside a conda prefix."""
    if platform.system() == "Windows":
        return env_dir / "python.exe"
    return env_dir / "bin" / "python"


class ProvisioningPhase(str, Enum):
    CHECKING = "checking"
    DOWNLOADING_BASE = "downloading_base"
    INSTALLING_BASE = "installing_base"
    CREATING_ENV = "creating_env"
    DOWNLOADING_CODE = "downloading_code"
    INSTALLING_DEPS = "installing_deps"
    DONE = "done"
    ERROR = "error"


# Overall percent sub-range per phase
PHASE_RANGES: Dict[ProvisioningPhase, Tuple[int, int]] = {
    ProvisioningPhase.CHECKING: (0, 4),
    ProvisioningPhase.DOWNLOADING_BASE: (5, 33),
    ProvisioningPhase.INSTALLING_BASE: (33, 44),
    ProvisioningPhase.CREATING_ENV: (45, 54),
    ProvisioningPhase.DOWNLOADING_CODE: (55, 68),
    ProvisioningPhase.INSTALLING_DEPS: (70, 95),
    ProvisioningPhase.DONE: (100, 100),
}


@dataclass
class ProvisioningEvent:
    phase: ProvisioningPhase
    percent: int
    phase_percent: int
    status: str
    bytes_downloaded: Optional[int] = None
    total_bytes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "percent": self.percent,
            "phase_percent": self.phase_percent,
            "status": self.status,
            "bytes_downloaded": self.bytes_downloaded,
            "total_bytes": self.total_bytes,
        }


@dataclass
class ProvisioningResult:
    ready: bool
    phase: ProvisioningPhase
    error: Optional[RuntimeOrchestrationError] = None
    skipped: List[str] = field(default_factory=list)
    failed_phase: Optional[ProvisioningPhase] = None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "phase": self.phase.value,
            "error": self.message,
            "retryable": self.error.retryable if self.error else None,
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "skipped": list(self.skipped),
        }


class _ProgressReporter:
    """Maps phase-local percents into the overall range, never going backwards."""

    def __init__(self, channel: EventChannel[ProvisioningEvent]):
        self.channel = channel
        self.overall = 0
        self._phase_last: Dict[ProvisioningPhase, int] = {}

    def report(
        self,
        phase: ProvisioningPhase,
        phase_percent: int,
        status: str,
        bytes_downloaded: Optional[int] = None,
        total_bytes: Optional[int] = None,
    ) -> None:
        phase_percent = max(0, min(100, int(phase_percent)))
        phase_percent = max(phase_percent, self._phase_last.get(phase, 0))
        self._phase_last[phase] = phase_percent

        if phase == ProvisioningPhase.ERROR:
            overall = self.overall
        else:
            lo, hi = PHASE_RANGES[phase]
            overall = lo + round((hi - lo) * phase_percent / 100)
        self.overall = max(self.overall, overall)

        self.channel.emit(
            ProvisioningEvent(
                phase=phase,
                percent=self.overall,
                phase_percent=phase_percent,
                status=status,
                bytes_downloaded=bytes_downloaded,
                total_bytes=total_bytes,
            )
        )


@dataclass
class CommandResult:
    returncode: int
    output_tail: List[str]

    @property
    def tail_text(self) -> str:
        return "\n".join(self.output_tail)


class EnvironmentProvisioner:
    """Provisions the base runtime, sidecar env, code bundle and dependencies."""

    def __init__(
        self,
        settings: RuntimeSettings,
        index_store: LocalIndexStore,
        installer: BundleInstaller,
        backend: Optional[BackendClient] = None,
        update_manager: Optional[UpdateManager] = None,
    ):
        self.settings = settings
        self.index_store = index_store
        self.installer = installer
        self.backend = backend
        self.update_manager = update_manager
        self.events: EventChannel[ProvisioningEvent] = EventChannel("provisioning", history=64)
        self._in_flight: Optional[asyncio.Task] = None
        self._runtime_config: Optional[RemoteRuntimeConfig] = None
        self._is_windows = platform.system() == "Windows"

    # =========================================================================
    # Paths and markers
    # =========================================================================

    @property
    def conda_executable(self) -> Path:
        base = self.settings.base_runtime_dir
        if self._is_windows:
            return base / "Scripts" / "conda.exe"
        return base / "bin" / "conda"

    @property
    def env_python(self) -> Path:
        return env_python_path(self.settings.env_dir)

    @property
    def installer_cache_path(self) -> Path:
        suffix = ".exe" if self._is_windows else ".sh"
        return self.settings.downloads_dir / f"base-runtime-installer{suffix}"

    @property
    def deps_marker_path(self) -> Path:
        return self.settings.env_dir / DEPS_MARKER_NAME

    async def _code_bundle_dir(self) -> Optional[Path]:
        path = await self.index_store.resolve_path(PYTHON_RUNTIME_BUNDLE)
        if path is not None and path.exists():
            return path
        return None

    async def _code_version(self) -> Optional[str]:
        index = await self.index_store.get()
        entry = index.first_entry(PYTHON_RUNTIME_BUNDLE)
        return entry.version if entry else None

    async def _deps_installed_version(self) -> Optional[str]:
        try:
            async with aiofiles.open(self.deps_marker_path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, ValueError):
            return None
        return data.get("code_version") if isinstance(data, dict) else None

    async def is_ready(self) -> bool:
        """True when every phase marker is satisfied."""
        if not self.conda_executable.exists() or not self.env_python.exists():
            return False
        if await self._code_bundle_dir() is None:
            return False
        version = await self._code_version()
        return version is not None and version == await self._deps_installed_version()

    # =========================================================================
    # Public API
    # =========================================================================

    async def ensure_ready(
        self,
        on_progress: Optional[Callable[[ProvisioningEvent], None]] = None,
    ) -> ProvisioningResult:
        """
        Provision everything that is missing. Never raises.

        A second caller while a run is in flight awaits the same run (and also
        receives its progress events).
        """
        unsubscribe = self.events.subscribe(on_progress) if on_progress else None
        try:
            if self._in_flight is None or self._in_flight.done():
                self._in_flight = asyncio.ensure_future(self._run())
            return await asyncio.shield(self._in_flight)
        finally:
            if unsubscribe:
                unsubscribe()

    async def _run(self) -> ProvisioningResult:
        reporter = _ProgressReporter(self.events)
        skipped: List[str] = []
        phase = ProvisioningPhase.CHECKING
        try:
            reporter.report(phase, 0, "Checking runtime environment")
            if await self.is_ready():
                reporter.report(ProvisioningPhase.DONE, 100, "Runtime ready")
                return ProvisioningResult(ready=True, phase=ProvisioningPhase.DONE, skipped=[
                    p.value for p in PHASE_RANGES if p not in (ProvisioningPhase.CHECKING, ProvisioningPhase.DONE)
                ])
            reporter.report(phase, 100, "Runtime needs provisioning")

            steps = [
                (ProvisioningPhase.DOWNLOADING_BASE, self._base_installer_satisfied, self._download_base),
                (ProvisioningPhase.INSTALLING_BASE, self._base_installed, self._install_base),
                (ProvisioningPhase.CREATING_ENV, self._env_created, self._create_env),
                (ProvisioningPhase.DOWNLOADING_CODE, self._code_installed, self._download_code),
                (ProvisioningPhase.INSTALLING_DEPS, self._deps_installed, self._install_deps),
            ]
            for phase, satisfied, action in steps:
                if await satisfied():
                    skipped.append(phase.value)
                    reporter.report(phase, 100, f"{phase.value}: already complete")
                    continue
                logger.info(f"[Provisioner] Phase {phase.value} starting")
                reporter.report(phase, 0, f"{phase.value}: starting")
                await action(reporter)
                reporter.report(phase, 100, f"{phase.value}: complete")

            phase = ProvisioningPhase.DONE
            reporter.report(phase, 100, "Runtime ready")
            logger.info("[Provisioner] Environment ready")
            return ProvisioningResult(ready=True, phase=phase, skipped=skipped)

        except RuntimeOrchestrationError as e:
            error = e
        except Exception as e:
            logger.error(f"[Provisioner] Unexpected failure in {phase.value}: {e}", exc_info=True)
            error = ProvisioningError(f"{phase.value} failed: {e}")

        logger.error(f"[Provisioner] {phase.value} failed: {error.message}")
        reporter.report(ProvisioningPhase.ERROR, 0, error.message)
        return ProvisioningResult(
            ready=False,
            phase=ProvisioningPhase.ERROR,
            error=error,
            skipped=skipped,
            failed_phase=phase,
        )

    # =========================================================================
    # Remote runtime config (lazy)
    # =========================================================================

    async def runtime_config(self) -> RemoteRuntimeConfig:
        """Remote download config merged over settings defaults; fetched once."""
        if self._runtime_config is not None:
            return self._runtime_config

        config = RemoteRuntimeConfig(
            conda_installer_url=self.settings.conda_installer_url,
            pip_index_url=self.settings.pip_index_url,
            conda_channels=list(self.settings.conda_channels),
        )
        if self.backend is not None:
            remote = await self.backend.get_runtime_config()
            if remote.ok:
                config = RemoteRuntimeConfig(
                    conda_installer_url=remote.value.conda_installer_url or config.conda_installer_url,
                    pip_index_url=remote.value.pip_index_url or config.pip_index_url,
                    conda_channels=remote.value.conda_channels or config.conda_channels,
                )
            else:
                logger.warning(
                    f"[Provisioner] Runtime config unavailable, using defaults: {remote.error}"
                )
        self._runtime_config = config
        return config

    # =========================================================================
    # Subprocess seam
    # =========================================================================

    async def _run_command(
        self,
        cmd: List[str],
        on_line: Optional[Callable[[str], None]] = None,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Run a command, streaming merged stdout/stderr lines to ``on_line``."""
        logger.debug(f"[Provisioner] Running: {' '.join(str(c) for c in cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *[str(c) for c in cmd],
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd) if cwd else None,
                env=env,
            )
        except OSError as e:
            raise ProvisioningError(f"Could not launch {cmd[0]}: {e}")

        tail: Deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
        assert proc.stdout is not None
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            decoded = line.decode(errors="replace").rstrip()
            if not decoded:
                continue
            tail.append(decoded)
            if on_line is not None:
                on_line(decoded)
        returncode = await proc.wait()
        return CommandResult(returncode=returncode, output_tail=list(tail))

    async def _check_command(
        self,
        cmd: List[str],
        description: str,
        on_line: Optional[Callable[[str], None]] = None,
        **kwargs: Any,
    ) -> CommandResult:
        result = await self._run_command(cmd, on_line=on_line, **kwargs)
        if result.returncode != 0:
            raise ProvisioningError(
                f"{description} failed (exit {result.returncode})",
                details={"output": result.tail_text},
            )
        return result

    @staticmethod
    def _line_progress(
        reporter: _ProgressReporter,
        phase: ProvisioningPhase,
        status: str,
        cap: int = 95,
    ) -> Callable[[str], None]:
        """Nudge phase progress forward on each output line of an opaque installer."""
        state = {"lines": 0}

        def _on_line(line: str) -> None:
            state["lines"] += 1
            percent = min(cap, int(cap * (1 - 0.97 ** state["lines"])))
            reporter.report(phase, percent, status)
            lower = line.lower()
            if "error" in lower or "traceback" in lower:
                logger.warning(f"[Provisioner:{phase.value}] {line}")
            else:
                logger.debug(f"[Provisioner:{phase.value}] {line}")

        return _on_line

    # =========================================================================
    # Phases
    # =========================================================================

    async def _base_installer_satisfied(self) -> bool:
        return self.conda_executable.exists() or self.installer_cache_path.exists()

    async def _download_base(self, reporter: _ProgressReporter) -> None:
        config = await self.runtime_config()
        if not config.conda_installer_url:
            raise ProvisioningError("No base runtime installer URL configured", retryable=False)

        partial = self.installer_cache_path.with_name(self.installer_cache_path.name + ".part")
        url = config.conda_installer_url
        session = await self.installer.get_http_session() if is_remote_url(url) else None

        def _on_progress(progress: DownloadProgress) -> None:
            reporter.report(
                ProvisioningPhase.DOWNLOADING_BASE,
                progress.percent,
                "Downloading base runtime",
                bytes_downloaded=progress.bytes_downloaded,
                total_bytes=progress.total_bytes,
            )

        try:
            await stream_download(
                session,
                url,
                partial,
                on_progress=_on_progress,
                chunk_size=self.settings.download_chunk_size,
                timeout=self.settings.download_timeout,
            )
            await aiofiles.os.replace(partial, self.installer_cache_path)
        finally:
            if partial.exists():
                partial.unlink()

    async def _base_installed(self) -> bool:
        return self.conda_executable.exists()

    async def _install_base(self, reporter: _ProgressReporter) -> None:
        base_dir = self.settings.base_runtime_dir
        loop = asyncio.get_running_loop()
        if base_dir.exists():
            logger.info(f"[Provisioner] Removing leftover base runtime at {base_dir}")
            await loop.run_in_executor(None, shutil.rmtree, base_dir, True)
        # The installer refuses an existing target; create only the parent.
        await aiofiles.os.makedirs(base_dir.parent, exist_ok=True)

        installer = self.installer_cache_path
        if self._is_windows:
            cmd = [
                str(installer),
                "/InstallationType=JustMe",
                "/RegisterPython=0",
                "/AddToPath=0",
                "/S",
                f"/D={base_dir}",
            ]
        else:
            cmd = ["bash", str(installer), "-b", "-p", str(base_dir)]

        on_line = self._line_progress(reporter, ProvisioningPhase.INSTALLING_BASE, "Installing base runtime")
        await self._check_command(cmd, "Base runtime installer", on_line=on_line)

        if not self.conda_executable.exists():
            raise ProvisioningError(
                f"Base runtime installer finished but {self.conda_executable} is missing"
            )

    async def _env_created(self) -> bool:
        return self.env_python.exists()

    async def _create_env(self, reporter: _ProgressReporter) -> None:
        env_dir = self.settings.env_dir
        if env_dir.exists():
            await asyncio.get_running_loop().run_in_executor(None, shutil.rmtree, env_dir, True)
        await aiofiles.os.makedirs(env_dir.parent, exist_ok=True)

        config = await self.runtime_config()
        cmd = [
            str(self.conda_executable),
            "create",
            "-p",
            str(env_dir),
            f"python={self.settings.python_version}",
            "-y",
        ]
        if config.conda_channels:
            cmd.append("--override-channels")
            for channel in config.conda_channels:
                cmd.extend(["-c", channel])

        on_line = self._line_progress(reporter, ProvisioningPhase.CREATING_ENV, "Creating environment")
        await self._check_command(cmd, "Environment creation", on_line=on_line)

        if not self.env_python.exists():
            raise ProvisioningError(f"Environment created but {self.env_python} is missing")

    async def _code_installed(self) -> bool:
        return await self._code_bundle_dir() is not None

    async def _download_code(self, reporter: _ProgressReporter) -> None:
        if self.update_manager is None:
            raise ProvisioningError("No update source configured for the sidecar bundle", retryable=False)
        descriptor = await self.update_manager.find_sidecar_descriptor()
        if descriptor is None:
            raise ProvisioningError("No sidecar runtime bundle is available from the backend")

        def _on_progress(progress: DownloadProgress) -> None:
            reporter.report(
                ProvisioningPhase.DOWNLOADING_CODE,
                min(progress.percent, 95),
                "Downloading sidecar code",
                bytes_downloaded=progress.bytes_downloaded,
                total_bytes=progress.total_bytes,
            )

        result = await self.installer.install(descriptor, on_progress=_on_progress)
        if not result.ok:
            raise result.error

    async def _deps_installed(self) -> bool:
        version = await self._code_version()
        return version is not None and version == await self._deps_installed_version()

    def _find_requirements(self, code_dir: Path) -> Optional[Path]:
        for candidate in (code_dir / "requirements.txt", code_dir / "sidecar" / "requirements.txt"):
            if candidate.is_file():
                return candidate
        return None

    async def _install_deps(self, reporter: _ProgressReporter) -> None:
        code_dir = await self._code_bundle_dir()
        version = await self._code_version()
        if code_dir is None or version is None:
            raise ProvisioningError("Sidecar code bundle is not installed")

        requirements = self._find_requirements(code_dir)
        if requirements is None:
            logger.info(f"[Provisioner] No requirements.txt in {code_dir}, nothing to install")
        else:
            config = await self.runtime_config()
            cmd = [
                str(self.env_python),
                "-m",
                "pip",
                "install",
                "--disable-pip-version-check",
                "-r",
                str(requirements),
            ]
            if config.pip_index_url:
                cmd.extend(["-i", config.pip_index_url])
            env = dict(os.environ)
            env["PIP_NO_INPUT"] = "1"
            on_line = self._line_progress(reporter, ProvisioningPhase.INSTALLING_DEPS, "Installing dependencies")
            await self._check_command(
                cmd, "Dependency installation", on_line=on_line, cwd=requirements.parent, env=env
            )

        await self._write_deps_marker(version)

    async def _write_deps_marker(self, version: str) -> None:
        await aiofiles.os.makedirs(self.settings.env_dir, exist_ok=True)
        payload = {"code_version": version, "installed_at": utc_now_iso()}
        tmp = self.deps_marker_path.with_name(DEPS_MARKER_NAME + ".tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload))
        await aiofiles.os.replace(tmp, self.deps_marker_path)
