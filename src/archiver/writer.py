"""
PostgreSQL persistence for archived groups, containers and records.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...), **never** string interpolation.

Every insert is ``ON CONFLICT DO NOTHING`` keyed by the primary id, so
re-processing a batch leaves storage unchanged.  A batch is written in
one transaction, groups before containers before records, and every row
gets its own savepoint: a bad row is logged and skipped without rolling
back its neighbours.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import asyncpg

from archiver.models import Container, Group, Record, is_newer
from archiver.watermarks import WatermarkStore
from shared.db import command_rowcount

logger = logging.getLogger("archiver.writer")

_INSERT_GROUP_SQL = """
    INSERT INTO groups (group_id, group_name)
    VALUES ($1, $2)
    ON CONFLICT (group_id) DO NOTHING
"""

_INSERT_CONTAINER_SQL = """
    INSERT INTO containers (container_id, container_name, group_id)
    VALUES ($1, $2, $3)
    ON CONFLICT (container_id) DO NOTHING
"""

_INSERT_RECORD_SQL = """
    INSERT INTO records (
        record_id, container_id, author_id, content, attachments, created_at
    )
    VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT (record_id) DO NOTHING
"""


@dataclass
class WriteResult:
    """Counts from one :meth:`PersistenceWriter.write` call."""

    inserted: int = 0
    groups_inserted: int = 0
    containers_inserted: int = 0
    failed_ids: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_ids)


class PersistenceWriter:
    """Idempotent writer plus forward-only watermark advance.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
        watermarks: Watermark store sharing the same pool.
    """

    def __init__(self, pool: asyncpg.Pool, watermarks: WatermarkStore) -> None:
        self._pool = pool
        self._watermarks = watermarks

    async def _insert_row(
        self,
        conn: asyncpg.Connection,
        sql: str,
        params: Sequence[Any],
        kind: str,
        row_id: str,
        result: WriteResult,
    ) -> int:
        try:
            async with conn.transaction():
                status = await conn.execute(sql, *params)
        except asyncpg.PostgresError as exc:
            logger.error("Failed to insert %s %s: %s", kind, row_id, exc)
            result.failed_ids.append(row_id)
            return 0
        return command_rowcount(status)

    async def write(
        self,
        groups: Sequence[Group],
        containers: Sequence[Container],
        records: Sequence[Record],
    ) -> WriteResult:
        """Insert a reconciled batch.

        Returns:
            A :class:`WriteResult`; ``inserted`` excludes records that
            were already stored.
        """
        result = WriteResult()
        if not (groups or containers or records):
            return result

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for group in groups:
                    result.groups_inserted += await self._insert_row(
                        conn, _INSERT_GROUP_SQL, (group.id, group.name),
                        "group", group.id, result,
                    )
                for container in containers:
                    result.containers_inserted += await self._insert_row(
                        conn,
                        _INSERT_CONTAINER_SQL,
                        (container.id, container.name, container.group.id),
                        "container", container.id, result,
                    )
                for record in records:
                    result.inserted += await self._insert_row(
                        conn, _INSERT_RECORD_SQL, record.to_params(),
                        "record", record.id, result,
                    )

        logger.debug(
            "Batch write: %d/%d new records, %d new containers, %d new groups, %d failed",
            result.inserted,
            len(records),
            result.containers_inserted,
            result.groups_inserted,
            result.failed,
        )
        return result

    async def advance_watermarks(
        self, newest_per_container: Dict[str, str]
    ) -> Dict[str, str]:
        """Move each container's watermark forward to its candidate.

        Candidates that are not newer than the stored watermark are
        skipped.  Call only after the matching records were written.

        Returns:
            ``{container_id: record_id}`` for watermarks that moved.
        """
        advanced: Dict[str, str] = {}
        for container_id, candidate in newest_per_container.items():
            current = await self._watermarks.get_watermark(container_id)
            if not is_newer(candidate, current):
                logger.debug(
                    "Watermark for %s stays at %s (candidate %s is not newer)",
                    container_id,
                    current,
                    candidate,
                )
                continue
            if await self._watermarks.set_watermark(container_id, candidate, expected=current):
                advanced[container_id] = candidate
        return advanced
