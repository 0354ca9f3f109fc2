"""
Telegram bot handlers for the backup trigger.

A group message equal to the trigger string starts one archive run for
that group.  The run is scheduled as a detached task so the bot keeps
processing updates; when it finishes, the task posts a summary back to
the chat.  Users only ever see generic failure text; details go to the
log and the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Coroutine, Dict, Optional

from telegram import Bot, Update
from telegram.constants import ChatType
from telegram.ext import ContextTypes

from archiver.orchestrator import SyncOrchestrator, SyncReport
from shared.audit import AuditLogger

logger = logging.getLogger("backupbot.handlers")

HandlerFunc = Callable[
    [Update, ContextTypes.DEFAULT_TYPE],
    Coroutine[Any, Any, None],
]

GROUP_ONLY_REPLY = "This command must be run in a group."
ALREADY_RUNNING_REPLY = "A backup is already running for this group."
STARTED_REPLY = "Backup started..."
NOTHING_FOUND_REPLY = "No messages found in any channels."
FAILURE_REPLY = "Backup failed. Details are in the archiver log."

_GROUP_CHAT_TYPES = {ChatType.GROUP, ChatType.SUPERGROUP}


def format_report(report: SyncReport) -> str:
    """Render the chat reply for a finished run."""
    errored = len(report.errored)
    if report.archived > 0:
        text = (
            f"Backed up {report.archived} more messages when scanning "
            f"{report.containers_scanned} channels."
        )
    elif errored == 0:
        return NOTHING_FOUND_REPLY
    else:
        text = (
            f"Backed up 0 more messages when scanning "
            f"{report.containers_scanned} channels."
        )
    if errored:
        text += (
            f"\n{errored} channel(s) could not be backed up. "
            "Details are in the archiver log."
        )
    return text


def format_failure(partial: SyncReport) -> str:
    """Render the chat reply for a run that failed or timed out."""
    if partial.archived == 0:
        return FAILURE_REPLY
    return (
        f"Backed up {partial.archived} more messages when scanning "
        f"{partial.containers_scanned} channels.\n{FAILURE_REPLY}"
    )


# ---------------------------------------------------------------------------
# Allowed-users decorator
# ---------------------------------------------------------------------------


def allowed_users_only(func: HandlerFunc) -> HandlerFunc:
    """Drop updates from users outside ``bot_data["allowed_user_ids"]``.

    An empty allowlist lets every member of the group trigger a backup.
    Rejected updates get no reply.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        allowed = context.bot_data.get("allowed_user_ids") or set()
        user_id = update.effective_user.id if update.effective_user else None

        if allowed and user_id not in allowed:
            logger.warning(
                "allowed_users_only: blocked user_id=%s on handler=%s",
                user_id,
                func.__name__,
            )
            audit: AuditLogger | None = context.bot_data.get("audit")
            if audit:
                await audit.log(
                    "backupbot",
                    "unauthorized_access",
                    {"user_id": user_id, "handler": func.__name__},
                    success=False,
                )
            return

        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Detached run
# ---------------------------------------------------------------------------


async def run_backup(
    orchestrator: SyncOrchestrator,
    bot: Bot,
    chat_id: int,
    group_id: str,
    timeout: Optional[float] = None,
    audit: Optional[AuditLogger] = None,
) -> str:
    """Run one archive for *group_id* and post the outcome to *chat_id*.

    The orchestrator fills in a report container by container, so a run
    that times out or fails still reports what the finished containers
    archived.

    Returns:
        The reply text that was sent.
    """
    partial = SyncReport(group_id=group_id)
    report: Optional[SyncReport] = None
    try:
        report = await asyncio.wait_for(orchestrator.sync_group(group_id, partial), timeout)
        reply = format_report(report)
    except asyncio.TimeoutError:
        logger.error(
            "Backup for group %s timed out after %ss (%d container(s) finished)",
            group_id,
            timeout,
            len(partial.results),
        )
        reply = format_failure(partial)
    except Exception:
        logger.exception("Backup for group %s failed", group_id)
        reply = format_failure(partial)

    if audit is not None:
        details: Dict[str, Any] = (report or partial).as_dict()
        details["completed"] = report is not None
        await audit.log(
            "backupbot",
            "backup_reply",
            details,
            success=report is not None and not report.errored,
        )

    await bot.send_message(chat_id=chat_id, text=reply)
    return reply


# ---------------------------------------------------------------------------
# Trigger handler
# ---------------------------------------------------------------------------


@allowed_users_only
async def handle_backup(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the trigger message: schedule a run for this group."""
    chat = update.effective_chat
    if chat is None or update.message is None:
        return
    if chat.type not in _GROUP_CHAT_TYPES:
        await update.message.reply_text(GROUP_ONLY_REPLY)
        return

    group_id = str(chat.id)
    active: Dict[str, asyncio.Task] = context.bot_data.setdefault("active_runs", {})
    running = active.get(group_id)
    if running is not None and not running.done():
        await update.message.reply_text(ALREADY_RUNNING_REPLY)
        return

    audit: AuditLogger | None = context.bot_data.get("audit")
    if audit:
        await audit.log(
            "backupbot",
            "backup_trigger",
            {
                "group_id": group_id,
                "user_id": update.effective_user.id if update.effective_user else None,
            },
            success=True,
        )

    await update.message.reply_text(STARTED_REPLY)
    task = context.application.create_task(
        run_backup(
            context.bot_data["orchestrator"],
            context.bot,
            chat.id,
            group_id,
            timeout=context.bot_data.get("run_timeout"),
            audit=audit,
        ),
        name=f"backup-{group_id}",
    )
    active[group_id] = task
    task.add_done_callback(lambda _t: active.pop(group_id, None))


# ---------------------------------------------------------------------------
# Error handler
# ---------------------------------------------------------------------------


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Global error handler for unhandled exceptions in handlers."""
    logger.error("Unhandled error", exc_info=context.error)

    if isinstance(update, Update) and update.effective_chat:
        try:
            await context.bot.send_message(
                chat_id=update.effective_chat.id,
                text="An error occurred. Please try again.",
            )
        except Exception:
            logger.exception("Failed to send error message to user")

    audit: AuditLogger | None = context.bot_data.get("audit")
    if audit:
        await audit.log(
            "backupbot",
            "unhandled_error",
            {"error": type(context.error).__name__},
            success=False,
        )
