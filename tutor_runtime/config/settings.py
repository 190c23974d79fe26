"""
Runtime Settings
================

Versioned, schema-validated settings for the runtime orchestration layer.

Load order:
    1. Field defaults declared on RuntimeSettings
    2. <storage_root>/TutorApp/settings.json (if present and parseable)
    3. Environment overrides (TUTOR_* variables)

Unknown fields are dropped. A field that fails validation falls back to its
default and a warning is logged; a corrupt settings file never stops startup.

Environment Variables:
    TUTOR_STORAGE_ROOT        Root directory for all local state
    TUTOR_BACKEND_URL         Remote backend base URL
    TUTOR_SIDECAR_HOST        Sidecar bind host (default: 127.0.0.1)
    TUTOR_SIDECAR_PORT        Sidecar port (default: 8000)
    TUTOR_HEALTH_TIMEOUT      Full preflight timeout in seconds (default: 12.0)
    TUTOR_RESTART_DELAY       Delay before an automatic restart (default: 1.0)
    TUTOR_MAX_AUTO_RESTARTS   Automatic restart cap (default: 2)
    TUTOR_QUEUE_MAX_RETRIES   Delivery attempts before dead-lettering (default: 5)
    TUTOR_CONDA_INSTALLER_URL Override for the base runtime installer
    TUTOR_PIP_INDEX_URL       Override for the pip index used for sidecar deps
    TUTOR_LOG_LEVEL           Log level for the CLI (default: INFO)

Usage:
    from tutor_runtime.config.settings import load_settings

    settings = load_settings()
    print(settings.index_path)
"""

from __future__ import annotations

import json
import logging
import platform
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from tutor_runtime.config.env_config import (
    get_env_float,
    get_env_int,
    get_env_str,
)

logger = logging.getLogger(__name__)

SETTINGS_SCHEMA_VERSION = 1

_MINICONDA_BASE_URL = "https://repo.anaconda.com/miniconda"


def default_storage_root() -> str:
    return str(Path.home() / ".tutor_app")


def default_conda_installer_url() -> str:
    """Pick the Miniconda installer matching this machine."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Windows":
        return f"{_MINICONDA_BASE_URL}/Miniconda3-latest-Windows-x86_64.exe"
    if system == "Darwin":
        arch = "arm64" if machine in ("arm64", "aarch64") else "x86_64"
        return f"{_MINICONDA_BASE_URL}/Miniconda3-latest-MacOSX-{arch}.sh"
    arch = "aarch64" if machine in ("arm64", "aarch64") else "x86_64"
    return f"{_MINICONDA_BASE_URL}/Miniconda3-latest-Linux-{arch}.sh"


def default_sync_endpoints() -> Dict[str, str]:
    return {
        "progress": "/v1/progress/chapter",
        "analytics": "/v1/analytics/events:ingest",
    }


class RuntimeSettings(BaseModel):
    """Settings for every runtime component. All fields have defaults."""

    model_config = ConfigDict(extra="ignore")

    schema_version: int = SETTINGS_SCHEMA_VERSION

    # Storage
    storage_root: str = Field(default_factory=default_storage_root)
    app_root: Optional[str] = None

    # Remote backend
    backend_base_url: str = "http://127.0.0.1:10723"
    http_timeout: float = Field(default=30.0, gt=0)
    download_timeout: float = Field(default=1800.0, gt=0)
    download_chunk_size: int = Field(default=64 * 1024, ge=1024)

    # Sidecar process
    sidecar_host: str = "127.0.0.1"
    sidecar_port: int = Field(default=8000, ge=1, le=65535)
    sidecar_entry_file: str = "app/server/main.py"
    sidecar_app_module: str = "app.server.main:app"
    health_timeout: float = Field(default=12.0, gt=0)
    fast_health_timeout: float = Field(default=1.2, gt=0)
    health_poll_interval: float = Field(default=0.25, gt=0)
    contract_timeout: float = Field(default=5.0, gt=0)
    restart_delay: float = Field(default=1.0, ge=0)
    max_auto_restarts: int = Field(default=2, ge=0)
    stderr_tail_chars: int = Field(default=8000, ge=256)

    # Environment provisioning
    python_version: str = "3.11"
    conda_installer_url: str = Field(default_factory=default_conda_installer_url)
    pip_index_url: Optional[str] = None
    conda_channels: List[str] = Field(default_factory=lambda: ["conda-forge"])

    # Sync queue
    queue_base_delay: float = Field(default=2.0, gt=0)
    queue_max_delay: float = Field(default=300.0, gt=0)
    queue_jitter: float = Field(default=1.0, ge=0)
    queue_max_retries: int = Field(default=5, ge=1)
    sync_endpoints: Dict[str, str] = Field(default_factory=default_sync_endpoints)

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Derived paths
    # -------------------------------------------------------------------------

    @property
    def tutor_root(self) -> Path:
        return Path(self.storage_root).expanduser() / "TutorApp"

    @property
    def bundles_root(self) -> Path:
        return self.tutor_root / "bundles"

    @property
    def sessions_root(self) -> Path:
        return self.tutor_root / "sessions"

    @property
    def queue_dir(self) -> Path:
        return self.tutor_root / "queue"

    @property
    def index_path(self) -> Path:
        return self.tutor_root / "active_index.json"

    @property
    def auth_path(self) -> Path:
        return self.tutor_root / "auth.store.json"

    @property
    def settings_path(self) -> Path:
        return self.tutor_root / "settings.json"

    @property
    def runtime_root(self) -> Path:
        return self.tutor_root / "runtime"

    @property
    def downloads_dir(self) -> Path:
        return self.runtime_root / "downloads"

    @property
    def base_runtime_dir(self) -> Path:
        # Never created by us; the installer refuses a pre-existing target.
        return self.runtime_root / "miniconda"

    @property
    def env_dir(self) -> Path:
        return self.runtime_root / "envs" / "sidecar"

    @property
    def resolved_app_root(self) -> Path:
        if self.app_root:
            return Path(self.app_root).expanduser()
        return Path(__file__).resolve().parent.parent.parent

    @property
    def sidecar_base_url(self) -> str:
        return f"http://{self.sidecar_host}:{self.sidecar_port}"


# =============================================================================
# Loading
# =============================================================================

def _validate_leniently(data: Dict[str, Any]) -> RuntimeSettings:
    """Validate, dropping (and logging) any field that fails."""
    candidate = dict(data)
    for _ in range(len(candidate) + 1):
        try:
            return RuntimeSettings.model_validate(candidate)
        except PydanticValidationError as e:
            bad_fields = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
            if not bad_fields or not bad_fields & set(candidate):
                break
            for name in bad_fields:
                logger.warning(
                    f"[Settings] Invalid value for {name!r} ({candidate.get(name)!r}), using default"
                )
                candidate.pop(name, None)
    return RuntimeSettings()


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"[Settings] Ignoring unreadable settings file {path}: {e}")
        return {}
    if not isinstance(raw, dict):
        logger.warning(f"[Settings] Ignoring settings file {path}: not a JSON object")
        return {}
    version = raw.get("schema_version", SETTINGS_SCHEMA_VERSION)
    if isinstance(version, int) and version > SETTINGS_SCHEMA_VERSION:
        logger.warning(
            f"[Settings] {path} has schema_version {version}, newer than "
            f"{SETTINGS_SCHEMA_VERSION}; reading known fields only"
        )
    raw.pop("schema_version", None)
    return raw


def _env_overrides(base: RuntimeSettings) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    storage_root = get_env_str("TUTOR_STORAGE_ROOT")
    if storage_root:
        overrides["storage_root"] = storage_root
    backend_url = get_env_str("TUTOR_BACKEND_URL")
    if backend_url:
        overrides["backend_base_url"] = backend_url
    host = get_env_str("TUTOR_SIDECAR_HOST")
    if host:
        overrides["sidecar_host"] = host
    installer_url = get_env_str("TUTOR_CONDA_INSTALLER_URL")
    if installer_url:
        overrides["conda_installer_url"] = installer_url
    pip_index = get_env_str("TUTOR_PIP_INDEX_URL")
    if pip_index:
        overrides["pip_index_url"] = pip_index
    log_level = get_env_str("TUTOR_LOG_LEVEL")
    if log_level:
        overrides["log_level"] = log_level

    overrides["sidecar_port"] = get_env_int(
        "TUTOR_SIDECAR_PORT", base.sidecar_port, min_val=1, max_val=65535
    )
    overrides["health_timeout"] = get_env_float(
        "TUTOR_HEALTH_TIMEOUT", base.health_timeout, min_val=0.5
    )
    overrides["restart_delay"] = get_env_float(
        "TUTOR_RESTART_DELAY", base.restart_delay, min_val=0.0
    )
    overrides["max_auto_restarts"] = get_env_int(
        "TUTOR_MAX_AUTO_RESTARTS", base.max_auto_restarts, min_val=0
    )
    overrides["queue_max_retries"] = get_env_int(
        "TUTOR_QUEUE_MAX_RETRIES", base.queue_max_retries, min_val=1
    )
    return overrides


def load_settings(
    settings_file: Optional[Path] = None,
    apply_env: bool = True,
    **overrides: Any,
) -> RuntimeSettings:
    """
    Build RuntimeSettings from defaults, the settings file and the environment.

    Args:
        settings_file: Explicit settings file; defaults to <tutor_root>/settings.json
        apply_env: Whether TUTOR_* environment variables override file values
        **overrides: Highest-priority field values (used by tests and the CLI)
    """
    base = _validate_leniently(dict(overrides))
    if apply_env:
        base = _validate_leniently({**base.model_dump(), **_env_overrides(base), **overrides})

    path = settings_file or base.settings_path
    file_values = _read_settings_file(path)

    data = {**base.model_dump(), **file_values}
    if apply_env:
        data.update(_env_overrides(_validate_leniently(data)))
    data.update(overrides)
    settings = _validate_leniently(data)
    logger.debug(f"[Settings] Loaded settings (tutor_root={settings.tutor_root})")
    return settings


def save_settings(settings: RuntimeSettings, settings_file: Optional[Path] = None) -> Path:
    """Persist settings as JSON (temp file + rename)."""
    path = settings_file or settings.settings_path
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json.dumps(settings.model_dump(), indent=2), encoding="utf-8")
    tmp_path.replace(path)
    return path
