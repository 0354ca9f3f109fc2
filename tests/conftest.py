"""
Shared fixtures: an in-memory stand-in for the asyncpg pool and an
in-memory upstream that follows the before/after page contract.

The fake pool understands exactly the statements the writer and the
watermark store issue (matched by their SQL text), enforces primary keys
with insert-if-absent semantics and the two foreign keys, and rolls back
on exceptions inside ``transaction()`` the way savepoints do.
"""

import copy
from typing import Dict, List, Optional

import asyncpg
import pytest

from archiver import watermarks as watermarks_mod
from archiver import writer as writer_mod
from archiver.fetcher import TransientUpstreamError
from archiver.models import Container, Group, Record, id_sequence


# ---------------------------------------------------------------------------
# Fake database
# ---------------------------------------------------------------------------


class FakeDatabase:
    def __init__(self):
        self.groups: Dict[str, dict] = {}
        self.containers: Dict[str, dict] = {}
        self.records: Dict[str, dict] = {}
        self.fail_record_ids: set = set()
        # (table, id) for every row actually inserted, in order
        self.insert_log: List[tuple] = []

    def snapshot(self):
        return copy.deepcopy((self.groups, self.containers, self.records, self.insert_log))

    def restore(self, snap):
        self.groups, self.containers, self.records, self.insert_log = snap


class FakeTransaction:
    def __init__(self, db: FakeDatabase):
        self._db = db
        self._snap = None

    async def __aenter__(self):
        self._snap = self._db.snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._db.restore(self._snap)
        return False


class FakeConnection:
    def __init__(self, db: FakeDatabase):
        self._db = db

    def transaction(self):
        return FakeTransaction(self._db)

    async def execute(self, sql, *args):
        db = self._db
        if sql == writer_mod._INSERT_GROUP_SQL:
            group_id, name = args
            if group_id in db.groups:
                return "INSERT 0 0"
            db.groups[group_id] = {"group_id": group_id, "group_name": name}
            db.insert_log.append(("groups", group_id))
            return "INSERT 0 1"

        if sql == writer_mod._INSERT_CONTAINER_SQL:
            container_id, name, group_id = args
            if container_id in db.containers:
                return "INSERT 0 0"
            if group_id not in db.groups:
                raise asyncpg.ForeignKeyViolationError(
                    f"containers.group_id={group_id} missing"
                )
            db.containers[container_id] = {
                "container_id": container_id,
                "container_name": name,
                "group_id": group_id,
                "watermark_record_id": None,
            }
            db.insert_log.append(("containers", container_id))
            return "INSERT 0 1"

        if sql == writer_mod._INSERT_RECORD_SQL:
            record_id, container_id, author_id, content, attachments, created_at = args
            if record_id in db.fail_record_ids:
                raise asyncpg.CheckViolationError(f"rejected {record_id}")
            if record_id in db.records:
                return "INSERT 0 0"
            if container_id not in db.containers:
                raise asyncpg.ForeignKeyViolationError(
                    f"records.container_id={container_id} missing"
                )
            db.records[record_id] = {
                "record_id": record_id,
                "container_id": container_id,
                "author_id": author_id,
                "content": content,
                "attachments": attachments,
                "created_at": created_at,
            }
            db.insert_log.append(("records", record_id))
            return "INSERT 0 1"

        if sql == watermarks_mod._ADVANCE_WATERMARK_SQL:
            container_id, new, expected = args
            row = db.containers.get(container_id)
            if row is None or row["watermark_record_id"] != expected:
                return "UPDATE 0"
            row["watermark_record_id"] = new
            return "UPDATE 1"

        raise AssertionError(f"Unexpected SQL: {sql}")

    async def fetchval(self, sql, *args):
        if sql == watermarks_mod._SELECT_WATERMARK_SQL:
            row = self._db.containers.get(args[0])
            return None if row is None else row["watermark_record_id"]
        raise AssertionError(f"Unexpected SQL: {sql}")


class _Acquire:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakePool:
    def __init__(self, db: Optional[FakeDatabase] = None):
        self.db = db or FakeDatabase()
        self.acquire_count = 0

    def acquire(self):
        self.acquire_count += 1
        return _Acquire(FakeConnection(self.db))

    async def execute(self, sql, *args):
        return await FakeConnection(self.db).execute(sql, *args)

    async def fetchval(self, sql, *args):
        return await FakeConnection(self.db).fetchval(sql, *args)


# ---------------------------------------------------------------------------
# Fake upstream
# ---------------------------------------------------------------------------


class FakeUpstream:
    """In-memory :class:`RecordSource`.

    ``fail_on_call`` maps a container id to the 1-based page call that
    raises :class:`TransientUpstreamError`.
    """

    def __init__(self):
        self.containers: Dict[str, List[Container]] = {}
        self.records: Dict[str, List[Record]] = {}
        self.calls: List[tuple] = []
        self.fail_on_call: Dict[str, int] = {}

    def add_container(self, container: Container) -> None:
        self.containers.setdefault(container.group.id, []).append(container)
        self.records.setdefault(container.id, [])

    def add_records(self, container: Container, records: List[Record]) -> None:
        self.records[container.id].extend(records)

    async def list_containers(self, group_id):
        return list(self.containers.get(group_id, []))

    async def fetch_page(self, container, before, after, limit, oldest_first=False):
        self.calls.append((container.id, before, after, limit, oldest_first))
        calls_for_container = sum(1 for c in self.calls if c[0] == container.id)
        if self.fail_on_call.get(container.id) == calls_for_container:
            raise TransientUpstreamError("rate limited")

        items = self.records.get(container.id, [])
        if before is not None:
            items = [r for r in items if r.sequence < id_sequence(before)]
        if after is not None:
            items = [r for r in items if r.sequence > id_sequence(after)]
        items = sorted(items, key=lambda r: r.sequence, reverse=not oldest_first)
        return items[:limit]

    def page_calls(self, container_id):
        return [c for c in self.calls if c[0] == container_id]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


GROUP = Group(id="-1001", name="Engineering")


def make_container(topic: Optional[int] = None, group: Group = GROUP, name: Optional[str] = None) -> Container:
    cid = group.id if topic is None else f"{group.id}/{topic}"
    return Container(id=cid, name=name or f"topic-{topic or 'main'}", group=group)


def make_record(container: Container, seq: int, created_at: Optional[int] = None, **kwargs) -> Record:
    return Record(
        id=f"{container.group.id}:{seq}",
        container=container,
        author_id=kwargs.pop("author_id", "42"),
        content=kwargs.pop("content", f"message {seq}"),
        created_at=created_at if created_at is not None else 1_700_000_000_000 + seq * 1000,
        attachments=kwargs.pop("attachments", []),
    )


def make_records(container: Container, start: int, stop: int) -> List[Record]:
    return [make_record(container, seq) for seq in range(start, stop + 1)]


@pytest.fixture
def fake_pool():
    return FakePool()


@pytest.fixture
def upstream():
    return FakeUpstream()
