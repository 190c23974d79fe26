import asyncio
import json

import pytest

from tutor_runtime.core import provisioner as provisioner_module
from tutor_runtime.core.bundle_installer import BundleInstaller
from tutor_runtime.core.errors import ProvisioningError
from tutor_runtime.core.index_store import InstalledBundleEntry
from tutor_runtime.core.provisioner import (
    DEPS_MARKER_NAME,
    CommandResult,
    EnvironmentProvisioner,
    ProvisioningPhase,
)


class FakeUpdates:
    def __init__(self, descriptor):
        self.descriptor = descriptor
        self.calls = 0

    async def find_sidecar_descriptor(self):
        self.calls += 1
        return self.descriptor


class FakeCommands:
    """Stands in for installer/conda/pip and creates the files they would."""

    def __init__(self, provisioner):
        self.provisioner = provisioner
        self.calls = []
        self.fail_on = None
        self.create_conda = True
        self.base_state = None

    @staticmethod
    def kind(cmd):
        if cmd[0] == "bash":
            return "install_base"
        if "create" in cmd:
            return "create_env"
        if "pip" in cmd:
            return "pip"
        return "other"

    async def __call__(self, cmd, on_line=None, cwd=None, env=None):
        kind = self.kind(cmd)
        self.calls.append(kind)
        if on_line is not None:
            for n in range(5):
                on_line(f"{kind} output {n}")
        if kind == "install_base":
            base_dir = self.provisioner.settings.base_runtime_dir
            self.base_state = {"exists": base_dir.exists(), "parent_exists": base_dir.parent.exists()}
            if base_dir.exists():
                return CommandResult(returncode=1, output_tail=[f"ERROR: File or directory already exists: '{base_dir}'"])
        if kind == self.fail_on:
            return CommandResult(returncode=1, output_tail=["fatal: simulated failure"])
        if kind == "install_base" and self.create_conda:
            conda = self.provisioner.conda_executable
            conda.parent.mkdir(parents=True, exist_ok=True)
            conda.write_text("#!/bin/sh\n")
        if kind == "create_env":
            python = self.provisioner.env_python
            python.parent.mkdir(parents=True, exist_ok=True)
            python.write_text("")
        return CommandResult(returncode=0, output_tail=[])


@pytest.fixture
def code_bundle(tmp_path, archive_bytes):
    artifact = tmp_path / "sidecar-runtime.tar.gz"
    artifact.write_bytes(
        archive_bytes({"requirements.txt": "fastapi\nuvicorn\n", "app/server/main.py": "app = None\n"})
    )
    return {
        "bundle_type": "python_runtime",
        "scope_id": "core",
        "version": "2.1.0",
        "artifact_url": str(artifact),
    }


@pytest.fixture
def provisioner(settings, index_store, tmp_path, code_bundle, monkeypatch):
    installer_script = tmp_path / "Miniconda3-latest.sh"
    installer_script.write_text("#!/bin/bash\necho installing\n")
    settings.conda_installer_url = str(installer_script)
    installer = BundleInstaller(settings, index_store)
    provisioner = EnvironmentProvisioner(
        settings,
        index_store,
        installer,
        update_manager=FakeUpdates(code_bundle),
    )
    commands = FakeCommands(provisioner)
    monkeypatch.setattr(provisioner, "_run_command", commands)
    provisioner.commands = commands
    return provisioner


@pytest.mark.asyncio
async def test_fresh_machine_runs_every_phase(provisioner, settings):
    events = []

    result = await provisioner.ensure_ready(on_progress=events.append)

    assert result.ready
    assert result.phase == ProvisioningPhase.DONE
    assert result.skipped == []
    assert provisioner.commands.calls == ["install_base", "create_env", "pip"]
    assert provisioner.installer_cache_path.exists()
    assert provisioner.commands.base_state == {"exists": False, "parent_exists": True}
    assert result.failed_phase is None

    marker = json.loads((settings.env_dir / DEPS_MARKER_NAME).read_text())
    assert marker["code_version"] == "2.1.0"

    percents = [e.percent for e in events]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    phases = [e.phase for e in events]
    assert ProvisioningPhase.DOWNLOADING_BASE in phases
    assert phases[-1] == ProvisioningPhase.DONE


@pytest.mark.asyncio
async def test_phase_percent_is_monotonic_within_phase(provisioner):
    events = []

    await provisioner.ensure_ready(on_progress=events.append)

    by_phase = {}
    for event in events:
        by_phase.setdefault(event.phase, []).append(event.phase_percent)
    for phase, values in by_phase.items():
        assert values == sorted(values), phase


@pytest.mark.asyncio
async def test_second_call_is_fast_path(provisioner):
    await provisioner.ensure_ready()
    provisioner.commands.calls.clear()
    provisioner.update_manager.calls = 0

    result = await provisioner.ensure_ready()

    assert result.ready
    assert provisioner.commands.calls == []
    assert provisioner.update_manager.calls == 0
    assert await provisioner.is_ready()


@pytest.mark.asyncio
async def test_failure_keeps_completed_phases_and_resumes(provisioner):
    provisioner.commands.fail_on = "create_env"

    failed = await provisioner.ensure_ready()

    assert not failed.ready
    assert failed.phase == ProvisioningPhase.ERROR
    assert failed.failed_phase == ProvisioningPhase.CREATING_ENV
    assert failed.to_dict()["failed_phase"] == "creating_env"
    assert isinstance(failed.error, ProvisioningError)
    assert "Environment creation failed" in failed.message
    assert "simulated failure" in failed.error.details["output"]
    assert provisioner.conda_executable.exists()

    provisioner.commands.fail_on = None
    provisioner.commands.calls.clear()
    resumed = await provisioner.ensure_ready()

    assert resumed.ready
    assert provisioner.commands.calls == ["create_env", "pip"]
    assert resumed.skipped == ["downloading_base", "installing_base"]


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_run(provisioner):
    first, second = await asyncio.gather(provisioner.ensure_ready(), provisioner.ensure_ready())

    assert first.ready and second.ready
    assert provisioner.commands.calls == ["install_base", "create_env", "pip"]
    assert provisioner.update_manager.calls == 1


@pytest.mark.asyncio
async def test_installer_without_conda_is_an_error(provisioner):
    provisioner.commands.create_conda = False

    result = await provisioner.ensure_ready()

    assert not result.ready
    assert "missing" in result.message
    assert provisioner.commands.calls == ["install_base"]


@pytest.mark.asyncio
async def test_leftover_base_dir_is_cleared_before_installer(provisioner, settings):
    leftover = settings.base_runtime_dir / "pkgs"
    leftover.mkdir(parents=True)
    (leftover / "partial.tar.bz2").write_bytes(b"\0")

    result = await provisioner.ensure_ready()

    assert result.ready
    assert provisioner.commands.base_state == {"exists": False, "parent_exists": True}


@pytest.mark.asyncio
async def test_refused_base_target_is_a_provisioning_error(provisioner, settings, monkeypatch):
    settings.base_runtime_dir.mkdir(parents=True)
    monkeypatch.setattr(provisioner_module.shutil, "rmtree", lambda path, ignore_errors=False: None)

    result = await provisioner.ensure_ready()

    assert not result.ready
    assert isinstance(result.error, ProvisioningError)
    assert result.failed_phase == ProvisioningPhase.INSTALLING_BASE
    assert "already exists" in result.error.details["output"]
    assert provisioner.commands.base_state["exists"] is True
    assert provisioner.commands.calls == ["install_base"]


@pytest.mark.asyncio
async def test_missing_code_bundle_is_an_error(provisioner):
    provisioner.update_manager.descriptor = None

    result = await provisioner.ensure_ready()

    assert not result.ready
    assert result.error.retryable
    assert result.failed_phase == ProvisioningPhase.DOWNLOADING_CODE
    assert provisioner.env_python.exists()


@pytest.mark.asyncio
async def test_new_code_version_reinstalls_dependencies_only(provisioner, index_store):
    await provisioner.ensure_ready()
    entry = (await index_store.get()).first_entry("python_runtime")
    await index_store.put_entry("python_runtime", "core", InstalledBundleEntry("2.2.0", entry.path))
    provisioner.commands.calls.clear()

    assert not await provisioner.is_ready()
    result = await provisioner.ensure_ready()

    assert result.ready
    assert provisioner.commands.calls == ["pip"]


@pytest.mark.asyncio
async def test_failing_progress_subscriber_does_not_break_run(provisioner):
    def explode(event):
        raise RuntimeError("ui went away")

    result = await provisioner.ensure_ready(on_progress=explode)

    assert result.ready
    assert provisioner.events.subscriber_count == 0
