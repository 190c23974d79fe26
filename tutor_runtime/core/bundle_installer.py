"""
Bundle Installer - Download, verify, extract and register bundle releases.
=========================================================================

Install pipeline for one BundleDescriptor:

    validate -> resolve URL -> stream download (sha256) -> verify digest
    -> extract into <target>.tmp-<uuid> -> atomic rename -> index entry

The final directory ``bundles/<type>/<scope parts...>/<version>`` only ever
appears through a rename of a fully extracted sibling. When it already exists
(an earlier or concurrent install won) the redundant extraction is discarded.
Every failure is returned as a typed Result and leaves no partial state.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import re
import shutil
import tarfile
import uuid
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Union

import aiofiles.os
import aiohttp
from pydantic import ValidationError as PydanticValidationError

from tutor_runtime.config.settings import RuntimeSettings
from tutor_runtime.core.backend_client import BackendClient, BundleDescriptor
from tutor_runtime.core.downloader import (
    DownloadProgress,
    is_remote_url,
    local_path_for,
    stream_download,
)
from tutor_runtime.core.errors import (
    ExtractError,
    IntegrityError,
    NetworkError,
    Result,
    RuntimeOrchestrationError,
    ValidationError,
)
from tutor_runtime.core.index_store import InstalledBundleEntry, LocalIndexStore

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT = re.compile(r"[^\w\-.]")


def sanitize_segment(value: Any) -> str:
    return _UNSAFE_SEGMENT.sub("_", str(value or "").strip())


def scope_parts(scope_id: str) -> List[str]:
    """Split a scope id on '/' into sanitised directory levels."""
    parts = [sanitize_segment(part) for part in scope_id.split("/")]
    return [part for part in parts if part and part not in (".", "..")]


# =============================================================================
# Archive extraction (runs in the default executor)
# =============================================================================

def _is_within(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def _check_member_name(root: Path, name: str) -> None:
    pure = PurePosixPath(name.replace("\\", "/"))
    if pure.is_absolute() or ".." in pure.parts:
        raise ExtractError(f"Unsafe archive member path: {name}")
    if not _is_within(root, root / pure):
        raise ExtractError(f"Archive member escapes target: {name}")


def _extract_tar(archive: Path, dest: Path) -> None:
    with tarfile.open(archive, "r:*") as tar:
        members = tar.getmembers()
        for member in members:
            _check_member_name(dest, member.name)
            if member.isdev():
                raise ExtractError(f"Device file in archive: {member.name}")
            if member.issym() or member.islnk():
                link_target = PurePosixPath(member.linkname)
                if link_target.is_absolute():
                    raise ExtractError(f"Absolute link in archive: {member.name}")
                base = dest / PurePosixPath(member.name).parent if member.issym() else dest
                if not _is_within(dest, base / link_target):
                    raise ExtractError(f"Link escapes target: {member.name}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(dest, members=members, filter="data")
        else:
            tar.extractall(dest, members=members)


def _extract_zip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        for name in zf.namelist():
            _check_member_name(dest, name)
        zf.extractall(dest)


def extract_archive(archive: Path, dest: Path) -> None:
    """Unpack a tar (any compression) or zip archive into ``dest``."""
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if tarfile.is_tarfile(archive):
            _extract_tar(archive, dest)
        elif zipfile.is_zipfile(archive):
            _extract_zip(archive, dest)
        else:
            raise ExtractError(f"Unsupported archive format: {archive.name}")
    except ExtractError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ExtractError(f"Failed to extract {archive.name}: {e}")


# =============================================================================
# Installer
# =============================================================================

class BundleInstaller:
    """Installs BundleDescriptors into the bundles root and the local index."""

    def __init__(
        self,
        settings: RuntimeSettings,
        index_store: LocalIndexStore,
        backend: Optional[BackendClient] = None,
    ):
        self.settings = settings
        self.index_store = index_store
        self.backend = backend
        self.bundles_root = settings.bundles_root
        self._own_session: Optional[aiohttp.ClientSession] = None

    async def get_http_session(self) -> aiohttp.ClientSession:
        if self.backend is not None:
            return await self.backend.get_session()
        if self._own_session is None or self._own_session.closed:
            self._own_session = aiohttp.ClientSession()
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()

    def target_dir_for(self, descriptor: BundleDescriptor) -> Path:
        parts = scope_parts(descriptor.scope_id)
        return self.bundles_root.joinpath(
            sanitize_segment(descriptor.bundle_type),
            *parts,
            sanitize_segment(descriptor.version),
        )

    async def _resolve_url(self, artifact_url: str) -> str:
        if is_remote_url(artifact_url) or local_path_for(artifact_url) is not None:
            return artifact_url
        if self.backend is None:
            raise NetworkError(
                f"Cannot resolve artifact reference without a backend: {artifact_url}",
                retryable=False,
            )
        resolved = await self.backend.resolve_artifact_url(artifact_url)
        return resolved.unwrap()

    async def install(
        self,
        descriptor: Union[BundleDescriptor, Dict[str, Any]],
        on_progress: Optional[Callable[[DownloadProgress], None]] = None,
    ) -> Result[InstalledBundleEntry]:
        """Install one bundle release. Never raises."""
        try:
            if not isinstance(descriptor, BundleDescriptor):
                descriptor = BundleDescriptor.model_validate(descriptor or {})
        except PydanticValidationError as e:
            return Result.failure(ValidationError(f"Invalid bundle descriptor: {e}"))

        bundle_type = sanitize_segment(descriptor.bundle_type)
        version = sanitize_segment(descriptor.version)
        if not bundle_type or not version or not scope_parts(descriptor.scope_id):
            return Result.failure(ValidationError("Invalid bundle descriptor: empty path segment"))

        label = f"{descriptor.bundle_type}/{descriptor.scope_id}@{descriptor.version}"
        try:
            entry = await self._install(descriptor, on_progress)
        except RuntimeOrchestrationError as e:
            logger.warning(f"[BundleInstaller] Install of {label} failed: {e.message}")
            return Result.failure(e, bundle=label)
        except Exception as e:
            logger.error(f"[BundleInstaller] Unexpected error installing {label}: {e}", exc_info=True)
            return Result.failure(ExtractError(f"Unexpected install failure: {e}"), bundle=label)

        logger.info(f"[BundleInstaller] Installed {label} at {entry.path}")
        return Result.success(entry, bundle=label)

    async def _install(
        self,
        descriptor: BundleDescriptor,
        on_progress: Optional[Callable[[DownloadProgress], None]],
    ) -> InstalledBundleEntry:
        target_dir = self.target_dir_for(descriptor)
        downloads_dir = self.bundles_root / ".downloads"
        download_path = downloads_dir / f"{uuid.uuid4().hex}.part"

        url = await self._resolve_url(descriptor.artifact_url)
        session = await self.get_http_session() if is_remote_url(url) else None

        try:
            download = await stream_download(
                session,
                url,
                download_path,
                on_progress=on_progress,
                expected_size=descriptor.size_bytes or None,
                chunk_size=self.settings.download_chunk_size,
                timeout=self.settings.download_timeout,
            )

            expected = descriptor.sha256
            if expected and download.sha256 != expected:
                raise IntegrityError(
                    "Bundle checksum mismatch",
                    details={"expected": expected, "actual": download.sha256},
                )

            await aiofiles.os.makedirs(target_dir.parent, exist_ok=True)
            await self._extract_and_promote(download.path, target_dir)
        finally:
            try:
                await aiofiles.os.remove(download_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.debug(f"[BundleInstaller] Could not remove {download_path}: {e}")

        entry = InstalledBundleEntry(
            version=descriptor.version,
            path=str(target_dir),
            sha256=descriptor.sha256 or download.sha256,
        )
        await self.index_store.put_entry(descriptor.bundle_type, descriptor.scope_id, entry)
        return entry

    async def _extract_and_promote(self, archive: Path, target_dir: Path) -> None:
        temp_dir = target_dir.with_name(f"{target_dir.name}.tmp-{uuid.uuid4().hex}")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, extract_archive, archive, temp_dir)
            if target_dir.exists():
                logger.info(f"[BundleInstaller] {target_dir} already installed, discarding extraction")
                return
            try:
                os.rename(temp_dir, target_dir)
            except OSError as e:
                if e.errno in (errno.EEXIST, errno.ENOTEMPTY) or target_dir.exists():
                    logger.info(f"[BundleInstaller] Lost install race for {target_dir}, discarding")
                    return
                raise ExtractError(f"Failed to promote bundle to {target_dir}: {e}")
        finally:
            if temp_dir.exists():
                await loop.run_in_executor(None, shutil.rmtree, temp_dir, True)
