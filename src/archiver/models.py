"""
Typed records for the archive: groups, containers and the messages
stored in them.

Rows coming back from ``asyncpg`` are mapping-like ``Record`` objects;
they are validated here (``from_row``) and turned into plain dataclasses
before anything else touches them.  Malformed rows raise ``ValueError``
instead of being trusted at use time.

Identifiers are text.  A record id ends in an integer ordinal
(``"<group_id>:<message_id>"`` for Telegram, a bare snowflake elsewhere)
that is monotonically increasing within its container; ordering helpers
below compare on that ordinal rather than on the raw string.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


def id_sequence(record_id: str) -> int:
    """Return the numeric ordinal of *record_id*.

    Accepts both plain numeric ids (``"1234"``) and prefixed ids
    (``"-1001234:56"``); the part after the last ``:`` is used.

    Raises:
        ValueError: If the id is empty or has no integer suffix.
    """
    if not isinstance(record_id, str) or not record_id:
        raise ValueError(f"Invalid record id: {record_id!r}")
    tail = record_id.rsplit(":", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        raise ValueError(f"Record id has no numeric ordinal: {record_id!r}") from None


def is_newer(candidate: str, current: Optional[str]) -> bool:
    """``True`` if *candidate* should replace the stored watermark *current*."""
    if current is None:
        return True
    return id_sequence(candidate) > id_sequence(current)


def _require_str(row: Mapping[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = row[key] if key in row else None
    if not isinstance(value, str):
        raise ValueError(f"Row field {key!r} must be a string, got {type(value).__name__}")
    if not allow_empty and not value:
        raise ValueError(f"Row field {key!r} must not be empty")
    return value


def _optional_str(row: Mapping[str, Any], key: str) -> Optional[str]:
    value = row[key] if key in row else None
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Row field {key!r} must be a string or NULL")
    return value


@dataclass(frozen=True)
class Group:
    """A Telegram group (the "workspace" level that owns containers)."""

    id: str
    name: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Group":
        return cls(
            id=_require_str(row, "group_id"),
            name=_require_str(row, "group_name", allow_empty=True),
        )


@dataclass(frozen=True)
class Container:
    """A channel-like stream: a forum topic, or a whole non-forum chat.

    ``watermark`` is the id of the newest archived record.  It is set when
    the container is read back from the store, and on the copy a sync
    pipeline works with (the value read when the pipeline started).
    """

    id: str
    name: str
    group: Group
    watermark: Optional[str] = None

    @property
    def group_id(self) -> str:
        return self.group.id

    @classmethod
    def from_row(cls, row: Mapping[str, Any], group: Group) -> "Container":
        group_id = _require_str(row, "group_id")
        if group_id != group.id:
            raise ValueError(
                f"Container row group_id={group_id!r} does not match group {group.id!r}"
            )
        watermark = _optional_str(row, "watermark_record_id")
        if watermark is not None:
            id_sequence(watermark)
        return cls(
            id=_require_str(row, "container_id"),
            name=_require_str(row, "container_name", allow_empty=True),
            group=group,
            watermark=watermark,
        )


def serialize_attachments(attachments: List[Dict[str, Any]]) -> str:
    """Serialize attachment descriptors for the ``attachments`` TEXT column."""
    return json.dumps(list(attachments), ensure_ascii=False, separators=(",", ":"))


def parse_attachments(raw: Optional[str]) -> List[Dict[str, Any]]:
    """Inverse of :func:`serialize_attachments`.

    Raises:
        ValueError: If *raw* is not a JSON list of objects.
    """
    if raw is None or raw == "":
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Undecodable attachments payload: {exc}") from None
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise ValueError("Attachments payload must be a JSON list of objects")
    return value


@dataclass(frozen=True)
class Record:
    """One archived message.

    ``created_at`` is milliseconds since the Unix epoch.
    """

    id: str
    container: Container
    author_id: Optional[str]
    content: str
    created_at: int
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        id_sequence(self.id)
        if isinstance(self.created_at, bool) or not isinstance(self.created_at, int):
            raise ValueError(f"created_at must be an int, got {self.created_at!r}")

    @property
    def container_id(self) -> str:
        return self.container.id

    @property
    def sequence(self) -> int:
        return id_sequence(self.id)

    def sort_key(self) -> tuple[int, int]:
        """Recency key: timestamp first, id ordinal on ties."""
        return (self.created_at, self.sequence)

    def to_params(self) -> tuple:
        """Positional parameters for the records insert statement."""
        return (
            self.id,
            self.container.id,
            self.author_id,
            self.content,
            serialize_attachments(self.attachments),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any], container: Container) -> "Record":
        container_id = _require_str(row, "container_id")
        if container_id != container.id:
            raise ValueError(
                f"Record row container_id={container_id!r} does not match {container.id!r}"
            )
        created_at = row["created_at"] if "created_at" in row else None
        if isinstance(created_at, bool) or not isinstance(created_at, int):
            raise ValueError("Row field 'created_at' must be an integer")
        return cls(
            id=_require_str(row, "record_id"),
            container=container,
            author_id=_optional_str(row, "author_id"),
            content=_optional_str(row, "content") or "",
            created_at=created_at,
            attachments=parse_attachments(_optional_str(row, "attachments")),
        )


def newest(a: Record, b: Record) -> Record:
    """Return the more recent of two records (timestamp, then id ordinal)."""
    return b if b.sort_key() > a.sort_key() else a
