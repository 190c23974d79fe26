"""
RuntimeContext - builds every runtime component once and wires them together.

Callers hold one RuntimeContext for the application session instead of
reaching for module-level singletons.

Usage:
    context = RuntimeContext.create(load_settings())
    ready = await context.provisioner.ensure_ready()
    result = await context.supervisor.start({"llm_api_key": "sk-..."})
    await context.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from tutor_runtime.config.settings import RuntimeSettings, load_settings
from tutor_runtime.core.backend_client import BackendClient
from tutor_runtime.core.bundle_installer import BundleInstaller
from tutor_runtime.core.index_store import LocalIndexStore
from tutor_runtime.core.process_supervisor import ProcessSupervisor
from tutor_runtime.core.provisioner import EnvironmentProvisioner
from tutor_runtime.core.runtime_manager import RuntimeManager
from tutor_runtime.core.sync_queue import SyncQueue
from tutor_runtime.core.update_manager import UpdateManager

logger = logging.getLogger(__name__)


@dataclass
class RuntimeContext:
    settings: RuntimeSettings
    index_store: LocalIndexStore
    backend: BackendClient
    installer: BundleInstaller
    updates: UpdateManager
    provisioner: EnvironmentProvisioner
    supervisor: ProcessSupervisor
    sync_queue: SyncQueue
    runtime: RuntimeManager

    @classmethod
    def create(cls, settings: Optional[RuntimeSettings] = None) -> "RuntimeContext":
        settings = settings or load_settings()
        index_store = LocalIndexStore(settings.index_path)
        backend = BackendClient(settings)
        installer = BundleInstaller(settings, index_store, backend=backend)
        updates = UpdateManager(backend, installer, index_store)
        provisioner = EnvironmentProvisioner(
            settings,
            index_store,
            installer,
            backend=backend,
            update_manager=updates,
        )
        supervisor = ProcessSupervisor(settings, index_store)

        async def _send(endpoint: str, body: Any):
            return await backend.post(endpoint, body)

        sync_queue = SyncQueue(settings, sender=_send)
        runtime = RuntimeManager(settings, provisioner, supervisor, index_store)
        logger.debug(f"[RuntimeContext] Created for {settings.tutor_root}")
        return cls(
            settings=settings,
            index_store=index_store,
            backend=backend,
            installer=installer,
            updates=updates,
            provisioner=provisioner,
            supervisor=supervisor,
            sync_queue=sync_queue,
            runtime=runtime,
        )

    async def close(self) -> None:
        """Stop the sidecar and release HTTP sessions."""
        await self.supervisor.close()
        await self.installer.close()
        await self.backend.close()
