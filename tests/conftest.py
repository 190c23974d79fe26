"""
Pytest configuration and shared fixtures for the tutor runtime tests.

This file contains:
- Settings rooted in a per-test temporary directory
- Archive builders for bundle fixtures
- In-process aiohttp servers standing in for the backend and the sidecar
"""

import asyncio
import io
import sys
import tarfile
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Dict

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tutor_runtime.config.settings import load_settings  # noqa: E402
from tutor_runtime.core.index_store import LocalIndexStore  # noqa: E402
from tutor_runtime.core.sidecar_contract import (  # noqa: E402
    REQUIRED_CONTRACT_VERSION,
    REQUIRED_ROUTES,
    REQUIRED_SSE_EVENT_TYPES,
)


def build_tar_gz(files: Dict[str, str]) -> bytes:
    """In-memory .tar.gz with the given {name: text} members."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def valid_contract() -> dict:
    return {
        "contract_version": REQUIRED_CONTRACT_VERSION,
        "routes": [
            {"method": method, "path": path, "stability": "stable", "source": "sidecar"}
            for method, path in REQUIRED_ROUTES
        ],
        "sse_event_types": list(REQUIRED_SSE_EVENT_TYPES),
    }


@pytest.fixture(scope="session")
def project_root_path():
    """Return the project root directory path."""
    return project_root


@pytest.fixture
def settings(tmp_path):
    """Settings isolated under tmp_path with short timeouts."""
    return load_settings(
        apply_env=False,
        storage_root=str(tmp_path / "storage"),
        app_root=str(tmp_path / "desktop" / "app"),
        backend_base_url="http://127.0.0.1:9",
        health_timeout=2.0,
        fast_health_timeout=0.5,
        health_poll_interval=0.05,
        contract_timeout=1.0,
        restart_delay=0.0,
        queue_base_delay=2.0,
        queue_max_delay=60.0,
        queue_jitter=0.0,
        queue_max_retries=5,
        conda_installer_url="https://example.invalid/installer.sh",
    )


@pytest.fixture
def index_store(settings):
    return LocalIndexStore(settings.index_path)


@pytest.fixture
def archive_bytes():
    return build_tar_gz


@pytest.fixture
def contract_payload():
    return valid_contract()


@pytest.fixture
def serve_app():
    """Factory: ``async with serve_app(app) as server`` runs app on a free port."""

    @asynccontextmanager
    async def _serve(app: web.Application):
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        try:
            yield server
        finally:
            await server.close()

    return _serve


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(0.01)
        return predicate()

    return _wait


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_report_header(config):
    """Add custom header to pytest report."""
    return [
        "Tutor Runtime Test Suite",
        f"Project Root: {project_root}",
    ]
