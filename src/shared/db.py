"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The archiver role needs
INSERT + SELECT on ``groups``, ``containers`` and ``records``, UPDATE on
``containers.watermark_record_id`` only, and INSERT on ``audit_log``.
Archived rows are never updated or deleted.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS groups (
        group_id    TEXT PRIMARY KEY,
        group_name  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS containers (
        container_id         TEXT PRIMARY KEY,
        container_name       TEXT NOT NULL,
        group_id             TEXT NOT NULL REFERENCES groups (group_id),
        watermark_record_id  TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS records (
        record_id     TEXT PRIMARY KEY,
        container_id  TEXT NOT NULL REFERENCES containers (container_id),
        author_id     TEXT,
        content       TEXT,
        attachments   TEXT,
        created_at    BIGINT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_records_container_created
    ON records (container_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``database``, ``user``, and optionally
                ``port``, ``password``, ``min_size``, ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config["host"],
        port=config.get("port", 5432),
        database=config["database"],
        user=config["user"],
        password=config.get("password"),
        min_size=config.get("min_size", 1),
        max_size=config.get("max_size", 5),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config["user"],
        config["host"],
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at service startup.  Idempotent (uses IF NOT EXISTS).
    ``groups`` is created before ``containers`` and ``containers`` before
    ``records`` so the foreign keys resolve.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema ready")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database health check failed")
        return False


def command_rowcount(status: str) -> int:
    """Parse the affected row count from an asyncpg command status.

    asyncpg returns e.g. ``"INSERT 0 1"`` or ``"UPDATE 3"``.
    """
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError, IndexError):
        logger.debug("Unexpected command status string: %s", status)
        return 0
