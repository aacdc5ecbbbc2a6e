import asyncio
import json
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from sqlmodel import select

from mcpbridge.db.database import get_db_session
from mcpbridge.db.models import AuditLogEntry
from mcpbridge.schemas.api import AuditLogInfo

logger = logging.getLogger(__name__)

AuditWriter = Callable[[List[AuditLogEntry]], None]


def make_entry(
    bridge_id: str,
    action: str,
    resource: str,
    success: bool,
    *,
    token_id: Optional[str] = None,
    error: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLogEntry:
    return AuditLogEntry(
        bridge_id=bridge_id,
        token_id=token_id,
        action=action,
        resource=resource,
        success=success,
        error=error,
        metadata_json=json.dumps(metadata or {}, default=str),
    )


def write_entries(entries: List[AuditLogEntry]) -> None:
    with get_db_session() as db:
        db.add_all(entries)
        db.commit()


class AuditSink:
    """
    Batched, append-only audit log.

    `record` never raises and never waits on storage. A batch is written when
    `batch_size` entries are queued or `flush_interval` seconds after the first
    queued entry, whichever comes first. A failed write puts the whole batch back
    at the head of the queue for the next attempt.
    """

    def __init__(
        self,
        writer: AuditWriter = write_entries,
        *,
        batch_size: int = 10,
        flush_interval: float = 5.0,
    ) -> None:
        self._writer = writer
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._queue: Deque[AuditLogEntry] = deque()
        self._timer: Optional[asyncio.Task] = None
        self._flushing: Optional[asyncio.Task] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    def record(self, entry: AuditLogEntry) -> None:
        try:
            self._queue.append(entry)
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop: the entry waits for the next flush() or aclose().
                return
            if len(self._queue) >= self.batch_size:
                if self._flushing is None or self._flushing.done():
                    self._flushing = loop.create_task(self.flush())
            elif self._timer is None or self._timer.done():
                self._timer = loop.create_task(self._flush_later())
        except Exception:
            logger.exception("Failed to queue audit entry for bridge %s", entry.bridge_id)

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.flush_interval)
        self._timer = None
        await self.flush()

    async def flush(self) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._timer is not None and self._timer is not asyncio.current_task():
                self._timer.cancel()
                self._timer = None
            if not self._queue:
                return

            batch = list(self._queue)
            self._queue.clear()
            try:
                await asyncio.to_thread(self._writer, batch)
                logger.debug("Flushed %d audit entries", len(batch))
            except Exception:
                logger.exception("Audit flush of %d entries failed; re-queueing", len(batch))
                self._queue.extendleft(reversed(batch))
                if self._timer is None or self._timer.done():
                    self._timer = asyncio.get_running_loop().create_task(self._flush_later())
            else:
                self._schedule_leftovers()

    def _schedule_leftovers(self) -> None:
        # Entries recorded while the batch was being written.
        if not self._queue:
            return
        loop = asyncio.get_running_loop()
        if len(self._queue) >= self.batch_size:
            self._flushing = loop.create_task(self.flush())
        elif self._timer is None or self._timer.done():
            self._timer = loop.create_task(self._flush_later())

    async def aclose(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        # In-flight writes run to completion rather than being torn down.
        while self._flushing is not None and not self._flushing.done():
            await self._flushing
        await self.flush()
        while self._flushing is not None and not self._flushing.done():
            await self._flushing
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._queue:
            logger.warning("Audit sink closed with %d unwritten entries", len(self._queue))

    def recent(self, bridge_id: str, limit: int = 50) -> List[AuditLogInfo]:
        with get_db_session() as db:
            stmt = (
                select(AuditLogEntry)
                .where(AuditLogEntry.bridge_id == bridge_id)
                .order_by(AuditLogEntry.timestamp.desc())
                .limit(limit)
            )
            return [
                AuditLogInfo(
                    id=row.id,
                    bridge_id=row.bridge_id,
                    token_id=row.token_id,
                    action=row.action,
                    resource=row.resource,
                    success=row.success,
                    error=row.error,
                    timestamp=row.timestamp,
                    metadata=json.loads(row.metadata_json or "{}"),
                )
                for row in db.exec(stmt).all()
            ]
