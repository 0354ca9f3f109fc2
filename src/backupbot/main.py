"""
Backup bot wiring — builds the ``python-telegram-bot`` Application that
listens for the trigger message.

The bot does not run on its own: :mod:`archiver.main` owns the process
lifecycle and starts/stops the Application next to the Telethon session
and the database pool, since the bot needs both to serve a trigger.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Optional

from telegram.ext import Application, MessageHandler, filters

from archiver.orchestrator import SyncOrchestrator
from backupbot.handlers import error_handler, handle_backup
from shared.audit import AuditLogger

logger = logging.getLogger("backupbot.main")

DEFAULT_TRIGGER = "!backup"


def build_trigger_filter(trigger: str = DEFAULT_TRIGGER) -> filters.BaseFilter:
    """Match text messages exactly equal to *trigger*."""
    return filters.TEXT & filters.Regex(rf"^{re.escape(trigger)}\Z")


def _normalize_user_ids(value: Optional[Iterable[Any]]) -> set[int]:
    ids: set[int] = set()
    for item in value or ():
        try:
            ids.add(int(item))
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid bot.allowed_user_ids entry: %r", item)
    return ids


def build_application(
    config: Dict[str, Any],
    token: str,
    orchestrator: SyncOrchestrator,
    audit: Optional[AuditLogger] = None,
) -> Application:
    """Construct the Application (not yet started).

    Args:
        config: Parsed configuration (uses ``[bot]`` and
                ``archiver.run_timeout_seconds``).
        token: Bot API token.
        orchestrator: Orchestrator that serves trigger runs.
        audit: Optional audit logger shared with the archiver.
    """
    bot_config = config.get("bot", {})
    trigger = bot_config.get("trigger") or DEFAULT_TRIGGER

    app = Application.builder().token(token).build()
    app.bot_data["orchestrator"] = orchestrator
    app.bot_data["audit"] = audit
    app.bot_data["allowed_user_ids"] = _normalize_user_ids(bot_config.get("allowed_user_ids"))
    app.bot_data["run_timeout"] = config.get("archiver", {}).get("run_timeout_seconds")
    app.bot_data["active_runs"] = {}

    app.add_handler(MessageHandler(build_trigger_filter(trigger), handle_backup))
    app.add_error_handler(error_handler)

    logger.info(
        "Backup bot configured (trigger=%r, allowed users=%s)",
        trigger,
        sorted(app.bot_data["allowed_user_ids"]) or "any",
    )
    return app
