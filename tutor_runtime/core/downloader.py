"""
Streaming artifact download with incremental sha256 and progress reporting.

Shared by the bundle installer and the environment provisioner. Remote URLs
stream through aiohttp; absolute local paths and ``file://`` URLs are copied
with aiofiles so offline installs behave exactly like remote ones.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

import aiofiles
import aiofiles.os
import aiohttp

from tutor_runtime.core.errors import NetworkError

logger = logging.getLogger(__name__)


@dataclass
class DownloadProgress:
    bytes_downloaded: int
    total_bytes: Optional[int]
    percent: int

    def to_dict(self):
        return {
            "bytes_downloaded": self.bytes_downloaded,
            "total_bytes": self.total_bytes,
            "percent": self.percent,
        }


@dataclass
class DownloadResult:
    path: Path
    sha256: str
    size: int


ProgressCallback = Callable[[DownloadProgress], None]


def is_remote_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def local_path_for(url: str) -> Optional[Path]:
    """Filesystem path for ``file://`` URLs and absolute paths, else None."""
    if url.startswith("file://"):
        parsed = urlparse(url)
        return Path(unquote(parsed.path))
    candidate = Path(url)
    if candidate.is_absolute():
        return candidate
    return None


class _ProgressTracker:
    """Emits monotonically non-decreasing percentages."""

    def __init__(self, total: Optional[int], callback: Optional[ProgressCallback]):
        self.total = total if total and total > 0 else None
        self.callback = callback
        self.received = 0
        self._last_percent = -1

    def advance(self, n: int) -> None:
        self.received += n
        if self.total:
            percent = min(99, int(self.received * 100 / self.total))
        else:
            percent = max(self._last_percent, 0)
        if percent < self._last_percent:
            percent = self._last_percent
        self._emit(percent)

    def finish(self) -> None:
        self._emit(100, force=True)

    def _emit(self, percent: int, force: bool = False) -> None:
        if self.callback is None:
            return
        if percent == self._last_percent and not force and self.total:
            return
        self._last_percent = percent
        try:
            self.callback(DownloadProgress(self.received, self.total, percent))
        except Exception as e:
            logger.warning(f"[Downloader] Progress callback error: {e}")


async def stream_download(
    session: Optional[aiohttp.ClientSession],
    url: str,
    dest: Path,
    on_progress: Optional[ProgressCallback] = None,
    expected_size: Optional[int] = None,
    chunk_size: int = 64 * 1024,
    timeout: Optional[float] = None,
) -> DownloadResult:
    """
    Download ``url`` to ``dest`` while hashing.

    Raises:
        NetworkError: transport failure, non-2xx status or unreadable local source
    """
    dest = Path(dest)
    await aiofiles.os.makedirs(dest.parent, exist_ok=True)
    digest = hashlib.sha256()

    local = local_path_for(url)
    if local is not None:
        try:
            total = (await aiofiles.os.stat(local)).st_size
        except OSError as e:
            raise NetworkError(f"Local artifact not readable: {local} ({e})", retryable=False)
        tracker = _ProgressTracker(total, on_progress)
        async with aiofiles.open(local, "rb") as src, aiofiles.open(dest, "wb") as out:
            while True:
                chunk = await src.read(chunk_size)
                if not chunk:
                    break
                digest.update(chunk)
                await out.write(chunk)
                tracker.advance(len(chunk))
        tracker.finish()
        return DownloadResult(path=dest, sha256=digest.hexdigest(), size=tracker.received)

    if not is_remote_url(url):
        raise NetworkError(f"Unsupported artifact URL: {url}", retryable=False)
    if session is None:
        raise NetworkError("No HTTP session available for remote download")

    request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
    try:
        async with session.get(url, timeout=request_timeout) as response:
            if response.status < 200 or response.status >= 300:
                raise NetworkError(
                    f"Download failed with HTTP {response.status}: {url}",
                    status=response.status,
                    retryable=response.status == 429 or response.status >= 500,
                )
            total = response.content_length or expected_size
            tracker = _ProgressTracker(total, on_progress)
            async with aiofiles.open(dest, "wb") as out:
                async for chunk in response.content.iter_chunked(chunk_size):
                    digest.update(chunk)
                    await out.write(chunk)
                    tracker.advance(len(chunk))
    except asyncio.TimeoutError:
        raise NetworkError(f"Download timed out: {url}")
    except aiohttp.ClientError as e:
        raise NetworkError(f"Download failed: {type(e).__name__}: {e}")

    tracker.finish()
    logger.debug(f"[Downloader] {url} -> {dest} ({tracker.received} bytes)")
    return DownloadResult(path=dest, sha256=digest.hexdigest(), size=tracker.received)
