"""
Backend Client - REST access to the remote tutoring backend.
============================================================

Wraps aiohttp with the conventions the desktop client relies on:

- Every call returns a BackendResponse (ok, status, data); transport failures
  become ``ok=False, status=0`` rather than exceptions
- Bearer auth from the local auth store plus an ``X-Device-Id`` header
- A 401 triggers one single-flight token refresh and one retry
- Typed helpers for update checks, artifact URL resolution and runtime config

Usage:
    client = BackendClient(settings)
    check = await client.check_app_updates({"app_agents": "1.0.0"})
    await client.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os
import aiohttp
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tutor_runtime.config.settings import RuntimeSettings
from tutor_runtime.core.errors import NetworkError, Result, ValidationError

logger = logging.getLogger(__name__)

# Refresh when the access token expires within this window
_TOKEN_REFRESH_MARGIN_SECONDS = 60.0


# =============================================================================
# Wire Models
# =============================================================================

class BundleDescriptor(BaseModel):
    """A bundle release offered by the update check. Never persisted."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    bundle_type: str = Field(min_length=1)
    scope_id: str = Field(min_length=1)
    version: str = Field(min_length=1)
    artifact_url: str = Field(min_length=1)
    sha256: str = ""
    size_bytes: int = 0
    mandatory: bool = Field(default=False, alias="is_mandatory")

    @field_validator("bundle_type", "scope_id", "version", "artifact_url", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("sha256", mode="before")
    @classmethod
    def _normalize_sha(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("size_bytes", mode="before")
    @classmethod
    def _normalize_size(cls, value: Any) -> int:
        return value or 0


class UpdateCheck(BaseModel):
    model_config = ConfigDict(extra="ignore")

    required: List[BundleDescriptor] = Field(default_factory=list)
    optional: List[BundleDescriptor] = Field(default_factory=list)
    resolved_chapter: Optional[Dict[str, Any]] = None

    @property
    def all(self) -> List[BundleDescriptor]:
        return [*self.required, *self.optional]


class RemoteRuntimeConfig(BaseModel):
    """Where provisioning downloads from; every field optional."""

    model_config = ConfigDict(extra="ignore")

    conda_installer_url: Optional[str] = None
    pip_index_url: Optional[str] = None
    conda_channels: List[str] = Field(default_factory=list)


@dataclass
class BackendResponse:
    ok: bool
    status: int
    data: Any = None
    error: Optional[str] = None

    @property
    def is_network_error(self) -> bool:
        return self.status == 0

    def error_message(self) -> str:
        data = self.data
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            detail = data.get("detail")
            if isinstance(detail, dict) and detail.get("message"):
                return str(detail["message"])
            if isinstance(detail, str):
                return detail
            if isinstance(data.get("message"), str):
                return data["message"]
        if self.error:
            return self.error
        return f"Request failed ({self.status})"


# =============================================================================
# Auth Store
# =============================================================================

@dataclass
class AuthState:
    device_id: str = field(default_factory=lambda: f"desktop-{uuid.uuid4()}")
    access_token: str = ""
    refresh_token: str = ""
    access_token_expires_at: float = 0.0  # epoch seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "accessTokenExpiresAt": self.access_token_expires_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AuthState":
        state = cls()
        if d.get("deviceId"):
            state.device_id = str(d["deviceId"])
        state.access_token = str(d.get("accessToken") or "")
        state.refresh_token = str(d.get("refreshToken") or "")
        try:
            state.access_token_expires_at = float(d.get("accessTokenExpiresAt") or 0.0)
        except (TypeError, ValueError):
            state.access_token_expires_at = 0.0
        return state


class AuthStore:
    """Plain JSON auth state written by the login flow and read here."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._state: Optional[AuthState] = None

    async def load(self) -> AuthState:
        if self._state is not None:
            return self._state
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = json.loads(await f.read() or "{}")
            self._state = AuthState.from_dict(raw if isinstance(raw, dict) else {})
        except FileNotFoundError:
            self._state = AuthState()
        except (OSError, ValueError) as e:
            logger.warning(f"[AuthStore] Unreadable auth store, starting fresh: {e}")
            self._state = AuthState()
        return self._state

    async def save(self, state: AuthState) -> AuthState:
        self._state = state
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(state.to_dict(), indent=2))
        await aiofiles.os.replace(tmp_path, self.path)
        return state

    async def clear_tokens(self) -> None:
        state = await self.load()
        await self.save(AuthState(device_id=state.device_id))


# =============================================================================
# Client
# =============================================================================

class BackendClient:
    """Async REST client for the tutoring backend."""

    def __init__(
        self,
        settings: RuntimeSettings,
        auth_store: Optional[AuthStore] = None,
    ):
        self.settings = settings
        self.base_url = settings.backend_base_url.rstrip("/")
        self.auth_store = auth_store or AuthStore(settings.auth_path)
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._refresh_task: Optional[asyncio.Task] = None

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the shared HTTP session."""
        if self._http_session is None or self._http_session.closed:
            connector = aiohttp.TCPConnector(limit=20, limit_per_host=8)
            self._http_session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.settings.http_timeout),
            )
        return self._http_session

    async def close(self) -> None:
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        clean = path if path.startswith("/") else f"/{path}"
        return f"{self.base_url}{clean}"

    async def _execute(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
    ) -> BackendResponse:
        session = await self.get_session()
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        try:
            async with session.request(method, url, **kwargs) as response:
                content_type = response.headers.get("Content-Type", "")
                if "application/json" in content_type:
                    try:
                        data = await response.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        data = {}
                else:
                    data = await response.text()
                return BackendResponse(ok=200 <= response.status < 300, status=response.status, data=data)
        except asyncio.TimeoutError:
            return BackendResponse(ok=False, status=0, error=f"timeout calling {url}")
        except aiohttp.ClientError as e:
            return BackendResponse(ok=False, status=0, error=f"{type(e).__name__}: {e}")

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        with_auth: bool = True,
        headers: Optional[Dict[str, str]] = None,
    ) -> BackendResponse:
        auth = await self.auth_store.load()
        url = self._url(path)
        merged = dict(headers or {})
        if with_auth and auth.access_token:
            merged["Authorization"] = f"Bearer {auth.access_token}"
        if auth.device_id:
            merged["X-Device-Id"] = auth.device_id

        first = await self._execute(method.upper(), url, merged, body)
        if not (with_auth and first.status == 401 and auth.refresh_token):
            return first

        try:
            refreshed = await self._refresh_access_token()
        except NetworkError as e:
            logger.warning(f"[BackendClient] Token refresh failed, clearing tokens: {e}")
            await self.auth_store.clear_tokens()
            return first

        merged["Authorization"] = f"Bearer {refreshed.access_token}"
        return await self._execute(method.upper(), url, merged, body)

    async def get(self, path: str, with_auth: bool = True) -> BackendResponse:
        return await self.request("GET", path, with_auth=with_auth)

    async def post(self, path: str, body: Any = None, with_auth: bool = True) -> BackendResponse:
        return await self.request("POST", path, body=body, with_auth=with_auth)

    # -------------------------------------------------------------------------
    # Token refresh
    # -------------------------------------------------------------------------

    async def _refresh_access_token(self) -> AuthState:
        """Single-flight refresh; concurrent callers share one request."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> AuthState:
        auth = await self.auth_store.load()
        if not auth.refresh_token or not auth.device_id:
            raise NetworkError("No refresh token", retryable=False)

        response = await self._execute(
            "POST",
            self._url("/v1/auth/refresh"),
            {"X-Device-Id": auth.device_id},
            {"refresh_token": auth.refresh_token, "device_id": auth.device_id},
        )
        if not response.ok:
            raise NetworkError("Refresh token request failed", status=response.status)

        data = response.data if isinstance(response.data, dict) else {}
        access_token = str(data.get("access_token") or "")
        if not access_token:
            raise NetworkError("Refresh token response missing access token", retryable=False)
        try:
            expires_in = float(data.get("access_token_expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0.0

        auth.access_token = access_token
        if data.get("refresh_token"):
            auth.refresh_token = str(data["refresh_token"])
        auth.access_token_expires_at = time.time() + max(0.0, expires_in - 10)
        logger.info("[BackendClient] Access token refreshed")
        return await self.auth_store.save(auth)

    async def prefetch_credentials(self) -> bool:
        """
        Refresh the access token ahead of a long download if it is about to
        expire. Returns True when a usable token is available afterwards.
        """
        auth = await self.auth_store.load()
        if not auth.refresh_token:
            return bool(auth.access_token)
        expires_at = auth.access_token_expires_at
        if auth.access_token and expires_at and expires_at - time.time() > _TOKEN_REFRESH_MARGIN_SECONDS:
            return True
        try:
            await self._refresh_access_token()
            return True
        except NetworkError as e:
            logger.warning(f"[BackendClient] Credential prefetch failed: {e}")
            return bool(auth.access_token)

    # -------------------------------------------------------------------------
    # Typed endpoints
    # -------------------------------------------------------------------------

    async def check_app_updates(
        self,
        installed: Dict[str, str],
        desktop_version: str = "0.1.0",
        sidecar_version: str = "0.1.0",
    ) -> Result[UpdateCheck]:
        response = await self.post(
            "/v1/updates/check-app",
            {
                "desktop_version": desktop_version,
                "sidecar_version": sidecar_version,
                "installed": installed,
            },
        )
        return self._parse_update_check(response)

    async def check_chapter_updates(
        self,
        course_id: str,
        chapter_id: str,
        installed: Dict[str, Any],
    ) -> Result[UpdateCheck]:
        response = await self.post(
            "/v1/updates/check-chapter",
            {"course_id": course_id, "chapter_id": chapter_id, "installed": installed},
        )
        return self._parse_update_check(response)

    def _parse_update_check(self, response: BackendResponse) -> Result[UpdateCheck]:
        if not response.ok:
            return Result.failure(
                NetworkError(response.error_message(), status=response.status or None)
            )
        try:
            return Result.success(UpdateCheck.model_validate(response.data or {}))
        except Exception as e:
            return Result.failure(ValidationError(f"Malformed update check response: {e}"))

    async def resolve_artifact_url(self, artifact_ref: str) -> Result[str]:
        """Exchange an opaque artifact reference for a signed download URL."""
        await self.prefetch_credentials()
        response = await self.post("/v1/bundles/resolve-artifact", {"artifact_url": artifact_ref})
        if not response.ok:
            return Result.failure(
                NetworkError(
                    f"Artifact URL resolution failed: {response.error_message()}",
                    status=response.status or None,
                )
            )
        data = response.data if isinstance(response.data, dict) else {}
        url = str(data.get("download_url") or data.get("url") or "")
        if not url:
            return Result.failure(ValidationError("Artifact URL resolution returned no URL"))
        return Result.success(url)

    async def get_runtime_config(self) -> Result[RemoteRuntimeConfig]:
        response = await self.get("/v1/runtime/config")
        if not response.ok:
            return Result.failure(
                NetworkError(response.error_message(), status=response.status or None)
            )
        try:
            return Result.success(RemoteRuntimeConfig.model_validate(response.data or {}))
        except Exception as e:
            return Result.failure(ValidationError(f"Malformed runtime config: {e}"))
