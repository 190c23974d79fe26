"""
Tutor Runtime - Local Runtime Orchestration & Offline-Resilient Sync
=====================================================================

Main-process orchestration for the tutoring desktop client:

- LocalIndexStore: catalog of installed bundle versions
- BundleInstaller: download, verify and atomically install bundles
- EnvironmentProvisioner: staged, resumable local Python environment setup
- ProcessSupervisor: sidecar spawn, preflight and bounded auto-restart
- SyncQueue: durable outbound queue with backoff and dead-lettering

Usage:
    from tutor_runtime.context import RuntimeContext

    context = RuntimeContext.create()
    result = await context.provisioner.ensure_ready()
"""
from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

__version__ = "0.1.0"
__author__ = "Tutor Desktop Team"
