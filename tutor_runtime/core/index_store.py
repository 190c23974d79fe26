"""
Local Index Store - Persistent catalog of installed bundles.
============================================================

The index is a JSON map ``{bundle_type: {scope_id: entry}}`` persisted at
``<tutor_root>/active_index.json``. An entry is only written after its bundle
directory has been fully and atomically populated.

Guarantees:
- get() never raises; a missing or corrupt file yields the empty default
- save() is atomic (temp file in the same directory + os.replace)
- update() serialises read-modify-write with one in-process asyncio.Lock so
  interleaved installs cannot lose each other's entries

Usage:
    store = LocalIndexStore(settings.index_path)
    await store.put_entry("chapter", "course1/ch01", entry)
    path = await store.resolve_path("curriculum")
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

DEFAULT_BUNDLE_TYPES = (
    "curriculum",
    "agents",
    "experts",
    "app_agents",
    "chapter",
    "experts_shared",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class InstalledBundleEntry:
    """One installed bundle version."""
    version: str
    path: str
    sha256: Optional[str] = None
    installed_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "path": self.path,
            "sha256": self.sha256,
            "installedAt": self.installed_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Optional["InstalledBundleEntry"]:
        """Parse an entry; returns None for records without version or path."""
        if not isinstance(d, dict):
            return None
        version = d.get("version")
        path = d.get("path")
        if not version or not path:
            return None
        return cls(
            version=str(version),
            path=str(path),
            sha256=d.get("sha256") or None,
            installed_at=str(d.get("installedAt") or d.get("installed_at") or ""),
        )


@dataclass
class LocalIndex:
    """In-memory view of the bundle catalog."""
    bundles: Dict[str, Dict[str, InstalledBundleEntry]] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "LocalIndex":
        return cls(bundles={bundle_type: {} for bundle_type in DEFAULT_BUNDLE_TYPES})

    def get_entry(self, bundle_type: str, scope_id: str) -> Optional[InstalledBundleEntry]:
        return self.bundles.get(bundle_type, {}).get(scope_id)

    def set_entry(self, bundle_type: str, scope_id: str, entry: InstalledBundleEntry) -> None:
        self.bundles.setdefault(bundle_type, {})[scope_id] = entry

    def remove_entry(self, bundle_type: str, scope_id: str) -> bool:
        scopes = self.bundles.get(bundle_type, {})
        return scopes.pop(scope_id, None) is not None

    def entries(self, bundle_type: str) -> Dict[str, InstalledBundleEntry]:
        return dict(self.bundles.get(bundle_type, {}))

    def first_entry(self, bundle_type: str) -> Optional[InstalledBundleEntry]:
        scopes = self.bundles.get(bundle_type, {})
        for entry in scopes.values():
            return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            bundle_type: {scope_id: entry.to_dict() for scope_id, entry in scopes.items()}
            for bundle_type, scopes in self.bundles.items()
        }

    @classmethod
    def from_dict(cls, data: Any) -> "LocalIndex":
        index = cls.empty()
        if not isinstance(data, dict):
            return index
        for bundle_type, scopes in data.items():
            if not isinstance(scopes, dict):
                continue
            bucket = index.bundles.setdefault(str(bundle_type), {})
            for scope_id, raw_entry in scopes.items():
                entry = InstalledBundleEntry.from_dict(raw_entry)
                if entry is not None:
                    bucket[str(scope_id)] = entry
        return index


class LocalIndexStore:
    """JSON-file backed index with serialised mutation."""

    def __init__(self, index_path: Path):
        self.index_path = Path(index_path)
        self._lock = asyncio.Lock()

    async def get(self) -> LocalIndex:
        """Current index, or the empty default. Never raises."""
        try:
            async with aiofiles.open(self.index_path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return LocalIndex.empty()
        except OSError as e:
            logger.warning(f"[IndexStore] Could not read {self.index_path}: {e}")
            return LocalIndex.empty()

        try:
            return LocalIndex.from_dict(json.loads(raw) if raw.strip() else {})
        except ValueError as e:
            logger.warning(f"[IndexStore] Corrupt index at {self.index_path}, using empty: {e}")
            return LocalIndex.empty()

    async def save(self, index: LocalIndex) -> None:
        """Persist atomically; readers never observe a partial file."""
        await aiofiles.os.makedirs(self.index_path.parent, exist_ok=True)
        tmp_path = self.index_path.with_name(f".{self.index_path.name}.{uuid.uuid4().hex}.tmp")
        content = json.dumps(index.to_dict(), indent=2)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(tmp_path, self.index_path)
        except Exception:
            try:
                await aiofiles.os.remove(tmp_path)
            except OSError:
                pass
            raise

    async def update(self, mutator: Callable[[LocalIndex], None]) -> LocalIndex:
        """Read-modify-write under the store lock; returns the saved index."""
        async with self._lock:
            index = await self.get()
            mutator(index)
            await self.save(index)
            return index

    async def put_entry(
        self,
        bundle_type: str,
        scope_id: str,
        entry: InstalledBundleEntry,
    ) -> LocalIndex:
        def _apply(index: LocalIndex) -> None:
            index.set_entry(bundle_type, scope_id, entry)

        index = await self.update(_apply)
        logger.info(
            f"[IndexStore] Recorded {bundle_type}/{scope_id} -> {entry.version} at {entry.path}"
        )
        return index

    async def remove_entry(self, bundle_type: str, scope_id: str) -> LocalIndex:
        return await self.update(lambda index: index.remove_entry(bundle_type, scope_id))

    async def resolve_path(self, bundle_type: str, scope_id: Optional[str] = None) -> Optional[Path]:
        """Installed path for a bundle; first entry of the type when scope is omitted."""
        index = await self.get()
        if scope_id is not None:
            entry = index.get_entry(bundle_type, scope_id)
        else:
            entry = index.first_entry(bundle_type)
        return Path(entry.path) if entry else None

    async def list_scopes(self, bundle_type: str) -> List[str]:
        index = await self.get()
        return list(index.entries(bundle_type).keys())
