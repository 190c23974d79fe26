"""
Sidecar capability contract and preflight.

A sidecar is only usable when it is alive (``GET /health`` returns 2xx) and
declares a compatible contract at ``GET /api/contract``: exact contract
version, every required route and every required SSE event type.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from tutor_runtime.core.errors import (
    ContractMismatchError,
    HealthCheckError,
    RuntimeOrchestrationError,
)

logger = logging.getLogger(__name__)

REQUIRED_CONTRACT_VERSION = "v1"

REQUIRED_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("POST", "/api/session/new"),
    ("POST", "/api/session/{session_id}/message/stream"),
    ("GET", "/api/session/{session_id}/dynamic_report"),
    ("POST", "/api/session/{session_id}/end"),
    ("GET", "/api/contract"),
    ("GET", "/health"),
)

REQUIRED_SSE_EVENT_TYPES: Tuple[str, ...] = (
    "start",
    "companion_chunk",
    "companion_complete",
    "consultation_start",
    "consultation_complete",
    "consultation_error",
    "complete",
    "error",
)


class ContractRoute(BaseModel):
    model_config = ConfigDict(extra="ignore")

    method: str = ""
    path: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.method.upper(), self.path)


class SidecarContract(BaseModel):
    model_config = ConfigDict(extra="ignore")

    contract_version: str = ""
    routes: List[ContractRoute] = Field(default_factory=list)
    sse_event_types: List[str] = Field(default_factory=list)


def validate_contract(payload: Any) -> SidecarContract:
    """Parse and check a contract document; raises ContractMismatchError."""
    if not isinstance(payload, dict):
        raise ContractMismatchError("Contract response is not a JSON object")
    try:
        contract = SidecarContract.model_validate(payload)
    except Exception as e:
        raise ContractMismatchError(f"Malformed contract: {e}")

    if contract.contract_version != REQUIRED_CONTRACT_VERSION:
        raise ContractMismatchError(
            f"Contract version mismatch: expected {REQUIRED_CONTRACT_VERSION}, "
            f"got {contract.contract_version or 'none'}",
            details={"contract_version": contract.contract_version},
        )

    declared = {route.key for route in contract.routes}
    missing_routes = [f"{m} {p}" for m, p in REQUIRED_ROUTES if (m, p) not in declared]
    if missing_routes:
        raise ContractMismatchError(
            f"Contract missing routes: {', '.join(missing_routes)}",
            details={"missing_routes": missing_routes},
        )

    declared_events = set(contract.sse_event_types)
    missing_events = [e for e in REQUIRED_SSE_EVENT_TYPES if e not in declared_events]
    if missing_events:
        raise ContractMismatchError(
            f"Contract missing SSE event types: {', '.join(missing_events)}",
            details={"missing_event_types": missing_events},
        )
    return contract


@dataclass
class PreflightResult:
    ok: bool
    phase: str  # health | contract | ready
    reason: Optional[str] = None
    status: Optional[int] = None
    contract_version: Optional[str] = None
    error: Optional[RuntimeOrchestrationError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "phase": self.phase,
            "reason": self.reason,
            "status": self.status,
            "contract_version": self.contract_version,
        }


class SidecarPreflight:
    """Health polling and contract validation against one sidecar base URL."""

    def __init__(
        self,
        base_url: str,
        session_factory: Callable[[], Awaitable[aiohttp.ClientSession]],
        poll_interval: float = 0.25,
        contract_timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._session_factory = session_factory
        self.poll_interval = poll_interval
        self.contract_timeout = contract_timeout

    async def probe_health(self, timeout: float = 2.0) -> Tuple[bool, Optional[int], Optional[str]]:
        """One ``GET /health``; returns (healthy, status, error)."""
        session = await self._session_factory()
        try:
            async with session.get(
                f"{self.base_url}/health",
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                return 200 <= response.status < 300, response.status, None
        except asyncio.TimeoutError:
            return False, None, "health probe timed out"
        except aiohttp.ClientError as e:
            return False, None, f"{type(e).__name__}: {e}"

    async def wait_healthy(
        self,
        timeout: float,
        is_alive: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Poll /health until 2xx.

        Raises:
            HealthCheckError: on timeout, or as soon as ``is_alive`` reports
                that the process has exited
        """
        deadline = time.monotonic() + timeout
        last_status: Optional[int] = None
        last_error: Optional[str] = None
        while True:
            if is_alive is not None and not is_alive():
                raise HealthCheckError(
                    "Sidecar process exited before becoming healthy",
                    status=last_status,
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            healthy, last_status, last_error = await self.probe_health(
                timeout=max(0.1, min(remaining, 2.0))
            )
            if healthy:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        reason = f"Sidecar health check timed out after {timeout:.1f}s"
        if last_status is not None:
            reason += f" (last status {last_status})"
        elif last_error:
            reason += f" ({last_error})"
        raise HealthCheckError(reason, status=last_status)

    async def fetch_contract(self) -> SidecarContract:
        session = await self._session_factory()
        try:
            async with session.get(
                f"{self.base_url}/api/contract",
                timeout=aiohttp.ClientTimeout(total=self.contract_timeout),
            ) as response:
                if response.status < 200 or response.status >= 300:
                    raise ContractMismatchError(
                        f"Contract endpoint returned HTTP {response.status}",
                        status=response.status,
                    )
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise ContractMismatchError(f"Contract response is not JSON: {e}")
        except asyncio.TimeoutError:
            raise ContractMismatchError("Contract request timed out")
        except aiohttp.ClientError as e:
            raise ContractMismatchError(f"Contract request failed: {e}")
        return validate_contract(payload)

    async def run(
        self,
        timeout: float,
        is_alive: Optional[Callable[[], bool]] = None,
    ) -> PreflightResult:
        """Health, then contract. Never raises."""
        try:
            await self.wait_healthy(timeout, is_alive=is_alive)
        except HealthCheckError as e:
            return PreflightResult(ok=False, phase="health", reason=e.message, status=e.status, error=e)

        try:
            contract = await self.fetch_contract()
        except ContractMismatchError as e:
            logger.warning(f"[Preflight] Contract check failed: {e.message}")
            return PreflightResult(
                ok=False,
                phase="contract",
                reason=e.message,
                status=e.status,
                contract_version=e.details.get("contract_version"),
                error=e,
            )

        return PreflightResult(
            ok=True,
            phase="ready",
            status=200,
            contract_version=contract.contract_version,
        )
