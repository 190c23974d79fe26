"""
Runtime Manager - caller-facing start flow for the tutoring sidecar.

Combines provisioning, LLM provider bootstrap and process supervision into a
single ``start()`` whose failures are tagged with the stage that failed:

    sidecar        the environment could not be provisioned
    bootstrap      launch configuration is incomplete (e.g. missing API key)
    runtime_start  the supervisor could not bring the sidecar up
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from tutor_runtime.config.settings import RuntimeSettings
from tutor_runtime.core.errors import NetworkError, ValidationError
from tutor_runtime.core.index_store import LocalIndexStore
from tutor_runtime.core.process_supervisor import (
    ProcessSupervisor,
    RuntimeLaunchConfig,
    StartResult,
)
from tutor_runtime.core.provisioner import EnvironmentProvisioner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderMeta:
    llm_provider: str
    default_model: str
    base_url: Optional[str] = None


PROVIDERS: Dict[str, ProviderMeta] = {
    "gpt": ProviderMeta("openai", "gpt-4o"),
    "deepseek": ProviderMeta("custom", "deepseek-chat", "https://api.deepseek.com"),
    "qwen": ProviderMeta(
        "custom", "qwen-turbo", "https://dashscope.aliyuncs.com/compatible-mode/v1"
    ),
    "glm": ProviderMeta("custom", "glm-4", "https://open.bigmodel.cn/api/paas/v4"),
    "kimi": ProviderMeta("custom", "moonshot-v1-8k", "https://api.moonshot.cn/v1"),
    # OpenAI-compatible endpoint
    "gemini": ProviderMeta(
        "custom", "gemini-2.0-flash", "https://generativelanguage.googleapis.com/v1beta/openai/"
    ),
}

DEFAULT_PROVIDER = "gemini"


def map_provider(provider_id: str) -> ProviderMeta:
    return PROVIDERS.get((provider_id or "").strip().lower(), PROVIDERS[DEFAULT_PROVIDER])


def resolve_launch_config(
    provider_id: str,
    api_key: str,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    llm_format: Optional[str] = None,
    python_path: Optional[str] = None,
) -> RuntimeLaunchConfig:
    """
    Build a launch config; explicit values win over provider defaults.

    Raises:
        ValidationError: missing API key or an unknown ``llm_format``
    """
    if not (api_key or "").strip():
        raise ValidationError("missing api key")
    meta = map_provider(provider_id)
    try:
        return RuntimeLaunchConfig(
            python_path=python_path,
            llm_provider=llm_format or meta.llm_provider,
            llm_api_key=api_key.strip(),
            llm_model=model or meta.default_model,
            llm_base_url=base_url or meta.base_url,
        )
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid launch config: {e}")


class RuntimeManager:
    def __init__(
        self,
        settings: RuntimeSettings,
        provisioner: EnvironmentProvisioner,
        supervisor: ProcessSupervisor,
        index_store: LocalIndexStore,
    ):
        self.settings = settings
        self.provisioner = provisioner
        self.supervisor = supervisor
        self.index_store = index_store

    async def start(
        self,
        provider_id: str,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        llm_format: Optional[str] = None,
        python_path: Optional[str] = None,
    ) -> StartResult:
        """Provision, bootstrap and start. Never raises."""
        try:
            ready = await self.provisioner.ensure_ready()
        except Exception as e:
            logger.error(f"[RuntimeManager] Provisioning crashed: {e}", exc_info=True)
            return StartResult(started=False, reason=str(e) or "Sidecar setup failed", failure_stage="sidecar")
        if not ready.ready:
            return StartResult(
                started=False,
                reason=ready.message or "Sidecar bundle is not ready",
                failure_stage="sidecar",
            )

        try:
            config = resolve_launch_config(
                provider_id, api_key, model, base_url, llm_format, python_path
            )
        except ValidationError as e:
            return StartResult(started=False, reason=e.message, failure_stage="bootstrap")

        try:
            result = await self.supervisor.start(config)
        except Exception as e:
            logger.error(f"[RuntimeManager] Supervisor crashed: {e}", exc_info=True)
            return StartResult(started=False, reason=str(e) or "Runtime start failed", failure_stage="runtime_start")
        if not result.started:
            result.failure_stage = "runtime_start"
        return result

    async def ensure_started(self, provider_id: str, api_key: str, **kwargs: Any) -> StartResult:
        """Reuse a healthy, contract-valid sidecar or start a new one."""
        health = await self.supervisor.health()
        if health.get("healthy"):
            preflight = await self.supervisor.preflight()
            if preflight.ok:
                return StartResult(
                    started=True,
                    pid=self.supervisor.pid,
                    contract_version=preflight.contract_version,
                    phase=preflight.phase,
                )
            return StartResult(
                started=False,
                reason=preflight.reason or f"Sidecar preflight failed ({preflight.phase})",
                failure_stage="runtime_start",
                phase=preflight.phase,
            )
        return await self.start(provider_id, api_key, **kwargs)

    async def build_session_context(self, chapter_id: str) -> Dict[str, Any]:
        """Chapter scope, bundle paths and prompt sources handed to a new session."""
        index = await self.index_store.get()
        normalized = str(chapter_id or "").strip()
        if "/" in normalized:
            course_id, chapter_code = normalized.split("/", 1)
        else:
            course_id, chapter_code = "", normalized
        scope_id = f"{course_id}/{chapter_code}" if course_id else chapter_code

        chapter = index.get_entry("chapter", scope_id)
        app_agents = index.get_entry("app_agents", "core")
        experts_shared = index.get_entry("experts_shared", "shared")
        expert_paths = {expert_id: entry.path for expert_id, entry in index.entries("experts").items()}

        def _candidates(filename: str) -> List[str]:
            paths: List[str] = []
            if app_agents:
                base = Path(app_agents.path)
                paths.extend(
                    str(p)
                    for p in (
                        base / "content" / "agents" / filename,
                        base / "content" / "agents" / "shared" / filename,
                        base / "agents" / filename,
                        base / filename,
                    )
                )
            agents_dir = os.environ.get("MAIN_AGENTS_DIR", "").strip()
            if agents_dir:
                paths.append(str(Path(agents_dir) / filename))
            return list(dict.fromkeys(paths))

        return {
            "chapter_scope": {
                "chapter_id": normalized,
                "course_id": course_id or None,
                "chapter_code": chapter_code or None,
                "scope_id": scope_id or normalized,
            },
            "bundle_paths": {
                "chapter_bundle_path": chapter.path if chapter else None,
                "app_agents_path": app_agents.path if app_agents else None,
                "experts_shared_path": experts_shared.path if experts_shared else None,
                "expert_bundle_paths": expert_paths,
            },
            "prompt_sources": {
                "interaction_protocol_candidates": _candidates("interaction_protocol.md"),
                "socratic_vs_direct_candidates": _candidates("socratic_vs_direct.md"),
            },
        }

    async def create_session(self, chapter_id: str) -> Dict[str, Any]:
        """
        Open a tutoring session on the running sidecar.

        Raises:
            ValidationError: empty chapter id
            NetworkError: the sidecar rejected or did not answer the request
        """
        chapter_id = str(chapter_id or "").strip()
        if not chapter_id:
            raise ValidationError("Missing chapter_id")

        context = await self.build_session_context(chapter_id)
        url = f"{self.settings.sidecar_base_url}/api/session/new"
        timeout = aiohttp.ClientTimeout(total=self.settings.http_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    url, json={"chapter_id": chapter_id, "desktop_context": context}
                ) as response:
                    data = await response.json(content_type=None)
                    if not isinstance(data, dict):
                        data = {}
                    if response.status < 200 or response.status >= 300:
                        detail = data.get("detail")
                        raise NetworkError(
                            str(detail or f"Create session failed ({response.status})"),
                            status=response.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise NetworkError(f"Create session failed: {e}")

        return {
            "session_id": str(data.get("session_id", "")),
            "initial_message": str(data.get("initial_message") or ""),
        }
