"""
Reconciler: turns a fetched record list into normalized write batches.

Pure transformation, no I/O.  Upstream delivers records only; the
groups and containers they belong to are derived here so the writer can
insert them first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from archiver.models import Container, Group, Record, newest


@dataclass
class ReconcileResult:
    """Write batches plus the per-container watermark candidates."""

    records: List[Record] = field(default_factory=list)
    containers: List[Container] = field(default_factory=list)
    groups: List[Group] = field(default_factory=list)
    newest_per_container: Dict[str, str] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.records


def reconcile(records: Iterable[Record]) -> ReconcileResult:
    """Deduplicate *records* and collect their containers and groups.

    - Records: first occurrence of an id wins (archived copies are immutable).
    - Containers and groups: last seen wins for display names.
    - Watermark candidate per container: newest by ``created_at``,
      id ordinal on ties; delivery order is irrelevant.
    """
    seen_records: Dict[str, Record] = {}
    containers: Dict[str, Container] = {}
    groups: Dict[str, Group] = {}
    newest_records: Dict[str, Record] = {}

    for record in records:
        if record.id in seen_records:
            continue
        seen_records[record.id] = record

        container = record.container
        containers[container.id] = container
        groups[container.group.id] = container.group

        current = newest_records.get(container.id)
        newest_records[container.id] = record if current is None else newest(current, record)

    return ReconcileResult(
        records=list(seen_records.values()),
        containers=list(containers.values()),
        groups=list(groups.values()),
        newest_per_container={cid: rec.id for cid, rec in newest_records.items()},
    )
