"""
Per-container watermark storage.

The watermark lives in ``containers.watermark_record_id`` and is read
fresh on every call; nothing is cached between runs.  Updates are
compare-and-set against the value the caller last read, so a concurrent
or stale writer can never move a watermark it did not observe.
"""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from archiver.models import id_sequence
from shared.db import command_rowcount

logger = logging.getLogger("archiver.watermarks")

_SELECT_WATERMARK_SQL = """
    SELECT watermark_record_id
    FROM containers
    WHERE container_id = $1
"""

_ADVANCE_WATERMARK_SQL = """
    UPDATE containers
    SET watermark_record_id = $2
    WHERE container_id = $1
      AND watermark_record_id IS NOT DISTINCT FROM $3
"""


class WatermarkStore:
    """Reads and writes container watermarks.

    Args:
        pool: An ``asyncpg`` connection pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_watermark(self, container_id: str) -> Optional[str]:
        """Return the stored watermark, or ``None`` if never synced.

        A container that has no row yet is treated as never synced.

        Raises:
            ValueError: If the stored value is not a valid record id.
        """
        value = await self._pool.fetchval(_SELECT_WATERMARK_SQL, container_id)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError(
                f"Malformed watermark for container {container_id}: {value!r}"
            )
        id_sequence(value)
        return value

    async def set_watermark(
        self,
        container_id: str,
        record_id: str,
        expected: Optional[str] = None,
    ) -> bool:
        """Set the watermark if it still equals *expected*.

        Returns:
            ``True`` if the row was updated.
        """
        id_sequence(record_id)
        status = await self._pool.execute(
            _ADVANCE_WATERMARK_SQL, container_id, record_id, expected
        )
        updated = command_rowcount(status) > 0
        if not updated:
            logger.warning(
                "Watermark for container %s not updated (expected=%s, new=%s)",
                container_id,
                expected,
                record_id,
            )
        return updated
