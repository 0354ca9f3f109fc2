"""
Telegram implementation of :class:`archiver.fetcher.RecordSource`.

Mapping:
    - group     → a Telegram group/supergroup (marked chat id, e.g. ``-100…``)
    - container → a forum topic (``"<chat_id>/<topic_id>"``), or the whole
                  chat when the group is not a forum (``"<chat_id>"``)
    - record    → a message, id ``"<chat_id>:<message_id>"``

Message ids are per chat, hence the chat prefix on record ids.

Telethon's ``get_messages`` maps directly onto the page contract:
``offset_id`` is the exclusive "before" bound, ``min_id`` the exclusive
"after" bound, and results come newest first.  Oldest-first pages use
``reverse=True`` and pass only the "after" bound, since ``reverse``
flips the meaning of ``offset_id``.
"""

from __future__ import annotations

import logging
from datetime import timezone
from typing import Any, Dict, List, Optional

from telethon import errors
from telethon.tl import functions, types

from archiver.fetcher import MAX_PAGE_SIZE, TransientUpstreamError
from archiver.models import Container, Group, Record, id_sequence
from archiver.readonly_client import ReadOnlyTelegramClient

logger = logging.getLogger("archiver.telegram_source")

# FloodError covers FloodWaitError (420); ServerError/TimedOutError are 5xx.
_TRANSIENT_ERRORS = (errors.FloodError, errors.ServerError, errors.TimedOutError)


def record_id_for(group_id: str, message_id: int) -> str:
    return f"{group_id}:{int(message_id)}"


def container_id_for(group_id: str, topic_id: Optional[int]) -> str:
    if topic_id is None:
        return group_id
    return f"{group_id}/{int(topic_id)}"


def topic_id_of(container: Container) -> Optional[int]:
    """Return the forum topic id encoded in a container id, if any."""
    prefix = container.group.id + "/"
    if container.id.startswith(prefix):
        return int(container.id[len(prefix):])
    return None


def _describe_media(msg: Any) -> List[Dict[str, Any]]:
    """Attachment descriptors for a message (Telegram allows at most one)."""
    media = getattr(msg, "media", None)
    if media is None:
        return []
    kind = type(media).__name__
    if kind.startswith("MessageMedia"):
        kind = kind[len("MessageMedia"):]
    file = getattr(msg, "file", None)
    return [
        {
            "kind": kind.lower() or "unknown",
            "file_name": getattr(file, "name", None) if file else None,
            "mime_type": getattr(file, "mime_type", None) if file else None,
            "size": getattr(file, "size", None) if file else None,
        }
    ]


def message_to_record(msg: Any, container: Container) -> Record:
    """Convert a Telethon message into a :class:`Record`."""
    date = msg.date
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    sender_id = getattr(msg, "sender_id", None)
    return Record(
        id=record_id_for(container.group.id, msg.id),
        container=container,
        author_id=str(sender_id) if sender_id is not None else None,
        content=getattr(msg, "message", None) or "",
        created_at=int(date.timestamp() * 1000),
        attachments=_describe_media(msg),
    )


class TelegramSource:
    """Reads groups, topics and message pages through a read-only client.

    Args:
        client: A connected :class:`ReadOnlyTelegramClient`.
    """

    def __init__(self, client: ReadOnlyTelegramClient) -> None:
        self._client = client
        self._entities: Dict[str, Any] = {}

    async def _entity(self, group_id: str) -> Any:
        entity = self._entities.get(group_id)
        if entity is None:
            try:
                entity = await self._client.get_entity(int(group_id))
            except ValueError:
                # Not in Telethon's entity cache yet; a dialog listing fills it.
                logger.debug("Entity %s not cached; refreshing dialogs", group_id)
                await self._client.get_dialogs()
                entity = await self._client.get_entity(int(group_id))
            self._entities[group_id] = entity
        return entity

    async def list_containers(self, group_id: str) -> List[Container]:
        entity = await self._entity(group_id)
        title = getattr(entity, "title", None) or group_id
        group = Group(id=group_id, name=title)

        if not getattr(entity, "forum", False):
            return [Container(id=container_id_for(group_id, None), name=title, group=group)]

        containers = [
            Container(
                id=container_id_for(group_id, topic.id),
                name=getattr(topic, "title", None) or str(topic.id),
                group=group,
            )
            for topic in await self._list_topics(entity)
        ]
        logger.info("Group %s (%s) is a forum with %d topic(s)", group_id, title, len(containers))
        return containers

    async def _list_topics(self, entity: Any) -> List[Any]:
        topics: List[Any] = []
        seen: set[int] = set()
        offset_id = 0
        offset_topic = 0
        while True:
            try:
                result = await self._client(
                    functions.channels.GetForumTopicsRequest(
                        channel=entity,
                        offset_date=None,
                        offset_id=offset_id,
                        offset_topic=offset_topic,
                        limit=MAX_PAGE_SIZE,
                    )
                )
            except _TRANSIENT_ERRORS as exc:
                raise TransientUpstreamError(f"Listing forum topics failed: {exc}") from exc

            batch = [t for t in result.topics if t.id not in seen]
            if not batch:
                break
            for topic in batch:
                seen.add(topic.id)
                if not isinstance(topic, types.ForumTopicDeleted):
                    topics.append(topic)

            total = getattr(result, "count", 0) or 0
            if len(seen) >= total:
                break
            last = batch[-1]
            offset_topic = last.id
            offset_id = getattr(last, "top_message", 0) or 0
        return topics

    async def fetch_page(
        self,
        container: Container,
        before: Optional[str],
        after: Optional[str],
        limit: int,
        oldest_first: bool = False,
    ) -> List[Record]:
        entity = await self._entity(container.group.id)
        kwargs: Dict[str, Any] = {"limit": limit}
        if oldest_first:
            kwargs["reverse"] = True
        if before is not None:
            kwargs["offset_id"] = id_sequence(before)
        if after is not None:
            kwargs["min_id"] = id_sequence(after)
        topic_id = topic_id_of(container)
        if topic_id is not None:
            kwargs["reply_to"] = topic_id

        try:
            messages = await self._client.get_messages(entity, **kwargs)
        except _TRANSIENT_ERRORS as exc:
            raise TransientUpstreamError(
                f"get_messages failed for {container.id}: {exc}"
            ) from exc

        return [message_to_record(msg, container) for msg in messages]
