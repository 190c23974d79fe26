"""
Update Manager - reconcile installed bundles with what the backend offers.

App-level bundles (agents, shared experts) are synced here; the
``python_runtime`` bundle is deliberately left to the environment
provisioner, which owns its own progress reporting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tutor_runtime.core.backend_client import BackendClient, BundleDescriptor, UpdateCheck
from tutor_runtime.core.bundle_installer import BundleInstaller
from tutor_runtime.core.errors import RuntimeOrchestrationError
from tutor_runtime.core.index_store import LocalIndex, LocalIndexStore

logger = logging.getLogger(__name__)

PYTHON_RUNTIME_BUNDLE = "python_runtime"


@dataclass
class BundleSyncResult:
    installed: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[RuntimeOrchestrationError] = None
    check: Optional[UpdateCheck] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "installed": self.installed,
            "failed": self.failed,
            "error": self.error.to_dict() if self.error else None,
        }


def installed_versions_for_app(index: LocalIndex) -> Dict[str, str]:
    app_agents = index.get_entry("app_agents", "core")
    experts_shared = index.get_entry("experts_shared", "shared")
    runtime = index.first_entry(PYTHON_RUNTIME_BUNDLE)
    return {
        "app_agents": app_agents.version if app_agents else "",
        "experts_shared": experts_shared.version if experts_shared else "",
        PYTHON_RUNTIME_BUNDLE: runtime.version if runtime else "",
    }


def installed_versions_for_chapter(
    index: LocalIndex,
    course_id: str,
    chapter_id: str,
) -> Dict[str, Any]:
    chapter = index.get_entry("chapter", f"{course_id}/{chapter_id}")
    experts = {
        expert_id: entry.version
        for expert_id, entry in index.entries("experts").items()
        if entry.version
    }
    return {
        "chapter_bundle": chapter.version if chapter else None,
        "experts": experts,
    }


class UpdateManager:
    def __init__(
        self,
        backend: BackendClient,
        installer: BundleInstaller,
        index_store: LocalIndexStore,
    ):
        self.backend = backend
        self.installer = installer
        self.index_store = index_store

    async def _install_all(self, releases: List[BundleDescriptor], result: BundleSyncResult) -> None:
        for release in releases:
            outcome = await self.installer.install(release)
            if outcome.ok:
                result.installed += 1
                continue
            result.failed.append(
                {
                    "bundle_type": release.bundle_type,
                    "scope_id": release.scope_id,
                    "version": release.version,
                    "error": outcome.error.to_dict() if outcome.error else None,
                }
            )

    async def sync_app_bundles(self) -> BundleSyncResult:
        """Install every offered app bundle except the sidecar runtime."""
        result = BundleSyncResult()
        index = await self.index_store.get()
        check = await self.backend.check_app_updates(installed_versions_for_app(index))
        if not check.ok:
            result.error = check.error
            logger.warning(f"[UpdateManager] App update check failed: {check.error}")
            return result

        result.check = check.value
        releases = [r for r in check.value.all if r.bundle_type != PYTHON_RUNTIME_BUNDLE]
        await self._install_all(releases, result)
        logger.info(
            f"[UpdateManager] App sync: {result.installed} installed, {len(result.failed)} failed"
        )
        return result

    async def find_sidecar_descriptor(self) -> Optional[BundleDescriptor]:
        index = await self.index_store.get()
        check = await self.backend.check_app_updates(installed_versions_for_app(index))
        if not check.ok:
            logger.warning(f"[UpdateManager] Sidecar update check failed: {check.error}")
            return None
        for release in check.value.all:
            if release.bundle_type == PYTHON_RUNTIME_BUNDLE:
                return release
        return None

    async def sync_chapter_bundles(self, course_id: str, chapter_id: str) -> BundleSyncResult:
        result = BundleSyncResult()
        index = await self.index_store.get()
        installed = installed_versions_for_chapter(index, course_id, chapter_id)
        check = await self.backend.check_chapter_updates(course_id, chapter_id, installed)
        if not check.ok:
            result.error = check.error
            logger.warning(
                f"[UpdateManager] Chapter update check failed for {course_id}/{chapter_id}: {check.error}"
            )
            return result

        result.check = check.value
        await self._install_all(check.value.required, result)
        return result
