"""
Sync Queue - Durable per-stream outbox for backend writes.
==========================================================

Writes that must reach the backend (chapter progress, analytics events) are
appended to ``<queue_dir>/<stream>.jsonl`` and delivered by ``flush()``
whenever connectivity allows.

Delivery rules:
- Items are attempted in stored order; items not yet due are skipped
  without blocking later due items
- 2xx removes the item
- Network failure (status 0), 429 and 5xx are retryable: the item is kept
  with exponential backoff plus jitter, capped at the ceiling
- Any other 4xx is terminal and the item is dead-lettered immediately
- An item reaching ``max_retries`` is dead-lettered
- Dead letters go to ``<stream>.deadletter.jsonl`` and stay on disk; they are
  written before the queue file is rewritten, and stay queued if that write fails

Items enqueued while a flush is in flight are preserved.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiofiles
import aiofiles.os

from tutor_runtime.config.settings import RuntimeSettings
from tutor_runtime.core.bundle_installer import sanitize_segment
from tutor_runtime.core.errors import QueueDeliveryError

logger = logging.getLogger(__name__)

# sender(endpoint, body) -> object with ``ok`` and ``status`` (BackendResponse)
Sender = Callable[[str, Any], Awaitable[Any]]


@dataclass
class QueueItem:
    id: str
    payload: Any
    retries: int = 0
    created_at: float = 0.0
    next_attempt_at: float = 0.0
    last_error_status: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "retries": self.retries,
            "created_at": self.created_at,
            "next_attempt_at": self.next_attempt_at,
            "last_error_status": self.last_error_status,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Optional["QueueItem"]:
        if not isinstance(d, dict) or not d.get("id"):
            return None
        try:
            created_at = float(d.get("created_at") or 0.0)
            return cls(
                id=str(d["id"]),
                payload=d.get("payload", {}),
                retries=int(d.get("retries") or 0),
                created_at=created_at,
                next_attempt_at=float(d.get("next_attempt_at") or created_at),
                last_error_status=d.get("last_error_status"),
            )
        except (TypeError, ValueError):
            return None


@dataclass
class DeadLetterRecord:
    item: QueueItem
    reason: str
    dead_lettered_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.item.to_dict(),
            "reason": self.reason,
            "dead_lettered_at": self.dead_lettered_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Optional["DeadLetterRecord"]:
        item = QueueItem.from_dict(d)
        if item is None:
            return None
        return cls(
            item=item,
            reason=str(d.get("reason") or ""),
            dead_lettered_at=float(d.get("dead_lettered_at") or 0.0),
        )


@dataclass
class FlushResult:
    queue: str
    sent: int = 0
    remaining: int = 0
    deferred: int = 0
    dead_lettered: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue": self.queue,
            "sent": self.sent,
            "remaining": self.remaining,
            "deferred": self.deferred,
            "dead_lettered": self.dead_lettered,
        }


def is_retryable_status(status: int) -> bool:
    """Network failure, rate limiting and server errors are worth retrying."""
    if status == 0 or status == 429 or status >= 500:
        return True
    if 400 <= status < 500:
        return False
    # 1xx/3xx or anything unexpected: keep it and try again later
    return True


class SyncQueue:
    """File-backed FIFO queues keyed by stream name."""

    def __init__(
        self,
        settings: RuntimeSettings,
        sender: Optional[Sender] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.queue_dir = settings.queue_dir
        self.sender = sender
        self.clock = clock
        self.rng = rng or random.Random()
        self._file_locks: Dict[str, asyncio.Lock] = {}
        self._flush_locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Storage
    # =========================================================================

    @staticmethod
    def stream_name(stream: str) -> str:
        return sanitize_segment(stream) or "default"

    def queue_path(self, stream: str) -> Path:
        return self.queue_dir / f"{self.stream_name(stream)}.jsonl"

    def dead_letter_path(self, stream: str) -> Path:
        return self.queue_dir / f"{self.stream_name(stream)}.deadletter.jsonl"

    def _file_lock(self, stream: str) -> asyncio.Lock:
        return self._file_locks.setdefault(self.stream_name(stream), asyncio.Lock())

    def _flush_lock(self, stream: str) -> asyncio.Lock:
        return self._flush_locks.setdefault(self.stream_name(stream), asyncio.Lock())

    async def _read_lines(self, path: Path) -> List[Dict[str, Any]]:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return []
        records = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except ValueError:
                logger.warning(f"[SyncQueue] Skipping corrupt line in {path.name}")
        return records

    async def _read_items(self, stream: str) -> List[QueueItem]:
        items = []
        for record in await self._read_lines(self.queue_path(stream)):
            item = QueueItem.from_dict(record)
            if item is not None:
                items.append(item)
        return items

    async def _write_items(self, stream: str, items: List[QueueItem]) -> None:
        path = self.queue_path(stream)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        text = "".join(json.dumps(item.to_dict()) + "\n" for item in items)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(text)
        await aiofiles.os.replace(tmp_path, path)

    async def _append_dead_letters(self, stream: str, records: List[DeadLetterRecord]) -> None:
        if not records:
            return
        path = self.dead_letter_path(stream)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "a", encoding="utf-8") as f:
            for record in records:
                await f.write(json.dumps(record.to_dict()) + "\n")

    # =========================================================================
    # Public API
    # =========================================================================

    async def enqueue(self, stream: str, payload: Any) -> Dict[str, Any]:
        now = self.clock()
        item = QueueItem(
            id=str(uuid.uuid4()),
            payload=payload if payload is not None else {},
            retries=0,
            created_at=now,
            next_attempt_at=now,
        )
        path = self.queue_path(stream)
        async with self._file_lock(stream):
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "a", encoding="utf-8") as f:
                await f.write(json.dumps(item.to_dict()) + "\n")
            size = len(await self._read_items(stream))
        logger.debug(f"[SyncQueue] Enqueued {item.id} on {self.stream_name(stream)} (size={size})")
        return {"queued": True, "size": size, "id": item.id}

    async def size(self, stream: str) -> int:
        return len(await self._read_items(stream))

    async def items(self, stream: str) -> List[QueueItem]:
        return await self._read_items(stream)

    async def dead_letters(self, stream: str) -> List[DeadLetterRecord]:
        records = []
        for raw in await self._read_lines(self.dead_letter_path(stream)):
            record = DeadLetterRecord.from_dict(raw)
            if record is not None:
                records.append(record)
        return records

    def backoff_delay(self, retries: int) -> float:
        """Delay before attempt ``retries + 1``; never exceeds the ceiling."""
        ceiling = self.settings.queue_max_delay
        exponential = self.settings.queue_base_delay * (2 ** max(0, retries - 1))
        jitter = self.rng.uniform(0, self.settings.queue_jitter) if self.settings.queue_jitter else 0.0
        return min(min(exponential, ceiling) + jitter, ceiling)

    def _body_for(self, stream: str, payload: Any) -> Any:
        if self.stream_name(stream) == "analytics":
            if not (isinstance(payload, dict) and "events" in payload):
                return {"events": [payload]}
        return payload

    async def _deliver(self, endpoint: str, body: Any) -> int:
        """Send one body; returns the HTTP status (0 for transport failure)."""
        if self.sender is None:
            raise QueueDeliveryError("No sender configured", retryable=False)
        try:
            response = await self.sender(endpoint, body)
        except QueueDeliveryError:
            raise
        except Exception as e:
            logger.warning(f"[SyncQueue] Sender error for {endpoint}: {e}")
            return 0
        status = int(getattr(response, "status", 0) or 0)
        if getattr(response, "ok", False):
            return status or 200
        return status

    async def flush(
        self,
        stream: str,
        endpoint: str,
        max_retries: Optional[int] = None,
    ) -> FlushResult:
        """Attempt delivery of every due item on ``stream``."""
        if not endpoint:
            raise QueueDeliveryError("Missing sync endpoint", retryable=False)
        if max_retries is None:
            max_retries = self.settings.queue_max_retries
        name = self.stream_name(stream)
        result = FlushResult(queue=name)

        async with self._flush_lock(stream):
            async with self._file_lock(stream):
                snapshot = await self._read_items(stream)
            snapshot_ids = {item.id for item in snapshot}

            kept: List[QueueItem] = []
            dead: List[DeadLetterRecord] = []
            for item in snapshot:
                now = self.clock()
                if item.next_attempt_at > now:
                    result.deferred += 1
                    kept.append(item)
                    continue

                status = await self._deliver(endpoint, self._body_for(stream, item.payload))
                if 200 <= status < 300:
                    result.sent += 1
                    continue

                now = self.clock()
                item.retries += 1
                item.last_error_status = status
                if not is_retryable_status(status):
                    dead.append(DeadLetterRecord(item, f"non_retryable_status_{status}", now))
                elif item.retries >= max_retries:
                    dead.append(DeadLetterRecord(item, "max_retries_exceeded", now))
                else:
                    item.next_attempt_at = now + self.backoff_delay(item.retries)
                    kept.append(item)
                    result.errors.append({"id": item.id, "status": status})

            async with self._file_lock(stream):
                current = await self._read_items(stream)
                arrived = [item for item in current if item.id not in snapshot_ids]
                if dead:
                    try:
                        await self._append_dead_letters(stream, dead)
                    except OSError as e:
                        logger.warning(
                            f"[SyncQueue] Could not write dead letters for {name}, keeping {len(dead)} queued: {e}"
                        )
                        kept.extend(record.item for record in dead)
                        result.errors.extend(
                            {"id": record.item.id, "status": record.item.last_error_status} for record in dead
                        )
                        dead = []
                remaining = kept + arrived
                try:
                    await self._write_items(stream, remaining)
                except OSError as e:
                    raise QueueDeliveryError(
                        f"Could not rewrite queue {name}: {e}", details={"queue": name}
                    ) from e

        result.remaining = len(remaining)
        result.dead_lettered = len(dead)
        if result.sent or dead or result.errors:
            logger.info(
                f"[SyncQueue] Flushed {name}: sent={result.sent} remaining={result.remaining} "
                f"deferred={result.deferred} dead_lettered={result.dead_lettered}"
            )
        return result

    async def flush_all(self) -> Dict[str, FlushResult]:
        """Flush every configured stream against its endpoint."""
        results: Dict[str, FlushResult] = {}
        for stream, endpoint in self.settings.sync_endpoints.items():
            results[stream] = await self.flush(stream, endpoint)
        return results
