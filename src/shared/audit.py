"""
Structured audit trail for sync runs, per-container outcomes and bot
triggers, written to a JSON Lines file and the ``audit_log`` table.

Producers only enqueue; a background task drains the queue and writes
batches, so an audit call never waits on the database.  File and
database writes fail independently: one failing does not skip the other.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/tg-archiver/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class AuditEvent:
    """One audit entry."""

    service: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "service": self.service,
                "action": self.action,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"

    def db_params(self) -> tuple:
        return (
            self.service,
            self.action,
            json.dumps(self.details, default=str),
            self.success,
        )


class AuditLogger:
    """Queue-backed audit writer.

    Args:
        pool: ``asyncpg`` pool (needs INSERT on ``audit_log``).
        log_path: JSON Lines file to append to.
        queue_size: Max queued events before producers wait.
        flush_batch_size: Max events written per batch.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        log_path: Path = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = Path(log_path)
        self._queue: asyncio.Queue[Optional[AuditEvent]] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: Optional[asyncio.Task[None]] = None
        self._closed = False

    def _write_file(self, batch: List[AuditEvent]) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(event.json_line() for event in batch))
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

    async def _write_db(self, batch: List[AuditEvent]) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL, [event.db_params() for event in batch]
                )
        except (asyncpg.PostgresError, OSError):
            logger.exception("Failed to write %d audit event(s) to database", len(batch))

    async def _worker(self) -> None:
        stop = False
        while not stop:
            event = await self._queue.get()
            if event is None:
                break
            batch = [event]
            while len(batch) < self._flush_batch_size:
                try:
                    more = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if more is None:
                    stop = True
                    break
                batch.append(more)
            self._write_file(batch)
            await self._write_db(batch)

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event.

        Args:
            service: ``"archiver"`` or ``"backupbot"``.
            action: e.g. ``"sync_run"``, ``"sync_container"``,
                    ``"backup_trigger"``, ``"unauthorized_access"``.
            details: JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        if self._closed:
            logger.debug("Audit logger closed; dropping %s/%s", service, action)
            return
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(), name="tg-archiver-audit-writer"
            )
        await self._queue.put(AuditEvent(service, action, details or {}, success))

    async def close(self) -> None:
        """Flush queued events and stop the writer task."""
        if self._closed:
            return
        self._closed = True
        if self._worker_task is not None:
            await self._queue.put(None)
            await self._worker_task
            self._worker_task = None
