"""
Archiver entry point. Wires the database pool, the read-only Telegram
session and the backup bot together and runs until SIGTERM/SIGINT.

Runs as a long-lived systemd service under the ``tg-archiver`` user.

Key behaviours:
    - Loads configuration from ``/etc/tg-archiver/settings.toml``
      (``TG_ARCHIVER_CONFIG`` overrides the path).
    - Missing configuration or secrets are fatal before anything starts.
    - Every resource is created here and passed down explicitly; teardown
      runs in reverse order in ``finally`` blocks.
    - On shutdown, in-flight runs are cancelled and their current write
      unit is awaited before the pool closes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import toml
from telethon import TelegramClient as TelethonClient

from archiver.fetcher import MAX_PAGE_SIZE
from archiver.orchestrator import DEFAULT_MAX_CONCURRENCY, SyncOrchestrator
from archiver.readonly_client import ReadOnlyTelegramClient
from archiver.telegram_source import TelegramSource
from backupbot.main import build_application
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import decrypt_session_file, get_secret

logger = logging.getLogger("archiver.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("TG_ARCHIVER_CONFIG", "/etc/tg-archiver/settings.toml")
)
_DEFAULT_AUDIT_PATH = Path("/var/log/tg-archiver/audit.log")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("archiver", "session_path"),
        ("database",),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def _number(value: Any, default: float, cast: type, name: str) -> Any:
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning("Invalid archiver.%s=%r; using %s", name, value, default)
        return cast(default)


def sync_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize the ``[archiver]`` knobs used by :class:`SyncOrchestrator`.

    Returns:
        Keyword arguments for the orchestrator plus ``run_timeout``.
    """
    section = config.get("archiver", {})
    page_size = _number(section.get("page_size", MAX_PAGE_SIZE), MAX_PAGE_SIZE, int, "page_size")
    fetch_limit = _number(section.get("fetch_limit", 0), 0, int, "fetch_limit")
    max_concurrency = _number(
        section.get("max_concurrency", DEFAULT_MAX_CONCURRENCY),
        DEFAULT_MAX_CONCURRENCY,
        int,
        "max_concurrency",
    )
    page_delay = _number(section.get("page_delay_seconds", 0.5), 0.5, float, "page_delay_seconds")
    run_timeout = _number(section.get("run_timeout_seconds", 900), 900, float, "run_timeout_seconds")

    return {
        "page_size": max(1, min(MAX_PAGE_SIZE, page_size)),
        "fetch_limit": fetch_limit if fetch_limit > 0 else None,
        "max_concurrency": max(1, max_concurrency),
        "page_delay": max(0.0, page_delay),
        "run_timeout": run_timeout if run_timeout > 0 else None,
    }


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _wait_for_shutdown() -> None:
    while not _shutdown_event.is_set():
        await asyncio.sleep(0.5)


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler; sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


async def _cancel_active_runs(active_runs: Dict[str, asyncio.Task]) -> None:
    tasks = [task for task in active_runs.values() if not task.done()]
    if not tasks:
        return
    logger.info("Cancelling %d in-flight backup run(s)", len(tasks))
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config: Dict[str, Any], credentials: Dict[str, str]) -> None:
    """Run the archiver service until a shutdown signal arrives."""
    settings = sync_settings(config)
    run_timeout = settings.pop("run_timeout")
    config.setdefault("archiver", {})["run_timeout_seconds"] = run_timeout

    # Telethon needs an SQLite file path; the decrypted copy only ever
    # lives on tmpfs and is removed on exit.
    session_path = Path(config["archiver"]["session_path"])
    session_bytes = decrypt_session_file(session_path, credentials["session_encryption_key"])
    shm_dir = "/dev/shm" if os.path.isdir("/dev/shm") else None
    tmp_fd, tmp_path = tempfile.mkstemp(suffix=".session", dir=shm_dir)

    pool = None
    audit: Optional[AuditLogger] = None
    try:
        with os.fdopen(tmp_fd, "wb") as tmp_handle:
            tmp_handle.write(session_bytes)
        session_bytes = b""
        os.chmod(tmp_path, 0o600)
        session_base = tmp_path.removesuffix(".session")

        db_config = dict(config["database"])
        db_config["user"] = config["archiver"].get("db_user", "tg_archiver")
        pool = await get_connection_pool(db_config)
        await init_database(pool)
        if not await health_check(pool):
            raise RuntimeError("Database health check failed after schema init")

        audit_path = Path(config.get("audit", {}).get("log_path", _DEFAULT_AUDIT_PATH))
        audit = AuditLogger(pool, log_path=audit_path)

        raw_client = TelethonClient(
            session_base, int(credentials["api_id"]), credentials["api_hash"]
        )
        async with ReadOnlyTelegramClient(raw_client) as client:
            me = await client.get_me()
            logger.info("Telegram connected as %s (id=%s)", me.username, me.id)

            orchestrator = SyncOrchestrator(
                TelegramSource(client), pool, audit=audit, **settings
            )
            app = build_application(config, credentials["bot_token"], orchestrator, audit)

            async with app:
                await app.start()
                await app.updater.start_polling()
                await audit.log("archiver", "startup", {"user_id": me.id}, success=True)
                logger.info("Backup bot polling; waiting for triggers")

                await _wait_for_shutdown()

                await app.updater.stop()
                await _cancel_active_runs(app.bot_data.get("active_runs", {}))
                await orchestrator.drain()
                await app.stop()
    finally:
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")

        for path in (tmp_path, tmp_path + "-journal", tmp_path + "-wal", tmp_path + "-shm"):
            if os.path.exists(path):
                os.remove(path)
        logger.info("Archiver shut down cleanly.")


def load_credentials() -> Dict[str, str]:
    """Fetch every secret the service needs; raises ``RuntimeError`` if one is missing."""
    return {
        name: get_secret(name)
        for name in ("api_id", "api_hash", "bot_token", "session_encryption_key")
    }


def run() -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    try:
        config = load_config()
        credentials = load_credentials()
    except (FileNotFoundError, KeyError, RuntimeError, toml.TomlDecodeError) as exc:
        logger.critical("Startup configuration error: %s", exc)
        sys.exit(1)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main(config, credentials))


if __name__ == "__main__":
    run()
