"""
Sync orchestrator: one archive run over every container of a group.

Per container: read watermark → fetch → reconcile → write → advance
watermark.  Pipelines are independent and run under a small semaphore
so the upstream rate limit is respected; a failure in one container is
recorded in its result and never aborts the others.

The write + watermark unit is shielded from cancellation.  When a run is
cancelled or times out, the unit in flight still finishes, so stored
records and advanced watermarks stay consistent.  :meth:`drain` waits
for such orphaned units during shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set

import asyncpg

from archiver.fetcher import FetchResult, PaginatedFetcher, RecordSource
from archiver.models import Container
from archiver.progress import ContainerProgress, RunProgress
from archiver.reconciler import ReconcileResult, reconcile
from archiver.watermarks import WatermarkStore
from archiver.writer import PersistenceWriter
from shared.audit import AuditLogger

logger = logging.getLogger("archiver.orchestrator")

DEFAULT_MAX_CONCURRENCY = 3


@dataclass
class ContainerResult:
    """Outcome of one container pipeline."""

    container: Container
    fetched: int = 0
    pages: int = 0
    inserted: int = 0
    failed_rows: int = 0
    watermark: Optional[str] = None
    partial: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    """Aggregate of one run.  All totals are plain sums over ``results``."""

    group_id: str
    results: List[ContainerResult] = field(default_factory=list)

    @property
    def archived(self) -> int:
        return sum(r.inserted for r in self.results)

    @property
    def containers_scanned(self) -> int:
        return len(self.results)

    @property
    def errored(self) -> List[ContainerResult]:
        return [r for r in self.results if not r.ok]

    @property
    def failed_rows(self) -> int:
        return sum(r.failed_rows for r in self.results)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "archived": self.archived,
            "containers_scanned": self.containers_scanned,
            "containers_errored": [r.container.id for r in self.errored],
            "failed_rows": self.failed_rows,
        }


class SyncOrchestrator:
    """Coordinates fetch, reconcile and write for one group at a time.

    Args:
        source: Upstream :class:`RecordSource`.
        pool: ``asyncpg`` pool shared by the writer and watermark store.
        page_size: Records per upstream request.
        fetch_limit: Max records per container per run (``None``/``0`` =
                     unbounded).
        max_concurrency: Container pipelines allowed to run at once.
        page_delay: Seconds between page requests within a container.
        audit: Optional audit logger for per-run events.
    """

    def __init__(
        self,
        source: RecordSource,
        pool: asyncpg.Pool,
        *,
        page_size: int = 100,
        fetch_limit: Optional[int] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        page_delay: float = 0.0,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._source = source
        self._watermarks = WatermarkStore(pool)
        self._writer = PersistenceWriter(pool, self._watermarks)
        self._fetcher = PaginatedFetcher(source, page_size=page_size, page_delay=page_delay)
        self._fetch_limit = fetch_limit if fetch_limit and fetch_limit > 0 else None
        self._max_concurrency = max(1, int(max_concurrency))
        self._audit = audit
        self._inflight: Set[asyncio.Task[None]] = set()

    async def _audit_log(self, action: str, details: Dict[str, Any], success: bool) -> None:
        if self._audit is not None:
            await self._audit.log("archiver", action, details, success=success)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def sync_group(
        self, group_id: str, report: Optional[SyncReport] = None
    ) -> SyncReport:
        """Archive every container of *group_id* and return the report.

        Args:
            group_id: Group to archive.
            report: Optional report to fill in.  Each container's result is
                    appended as soon as its pipeline finishes, so a caller
                    that cancels the run (or times it out) still holds the
                    results of the containers that completed.

        Raises:
            Exception: Only if container enumeration itself fails; errors
                inside a container pipeline are captured in the report.
        """
        if report is None:
            report = SyncReport(group_id=group_id)

        containers: List[Container] = []
        seen: Set[str] = set()
        for container in await self._source.list_containers(group_id):
            if container.id in seen:
                continue
            seen.add(container.id)
            containers.append(container)

        logger.info(
            "Sync run for group %s: %d container(s), concurrency=%d, limit=%s",
            group_id,
            len(containers),
            self._max_concurrency,
            self._fetch_limit or "unbounded",
        )
        await self._audit_log(
            "sync_run_start",
            {"group_id": group_id, "containers": len(containers)},
            success=True,
        )

        run_progress = RunProgress(total=len(containers))
        semaphore = asyncio.Semaphore(self._max_concurrency)
        results = await asyncio.gather(
            *(
                self._sync_container(
                    container, idx + 1, len(containers), semaphore, run_progress, report
                )
                for idx, container in enumerate(containers)
            )
        )

        # Enumeration order rather than completion order.
        report.results = list(results)
        run_progress.log_run_progress()
        logger.info(
            "Sync run for group %s complete: %d new record(s), %d container(s), %d errored",
            group_id,
            report.archived,
            report.containers_scanned,
            len(report.errored),
        )
        await self._audit_log("sync_run", report.as_dict(), success=not report.errored)
        return report

    async def _sync_container(
        self,
        container: Container,
        index: int,
        total: int,
        semaphore: asyncio.Semaphore,
        run_progress: RunProgress,
        report: SyncReport,
    ) -> ContainerResult:
        result = ContainerResult(container=container)
        async with semaphore:
            progress = ContainerProgress(index, total, container.name)
            try:
                container = replace(
                    container, watermark=await self._watermarks.get_watermark(container.id)
                )
                result.container = container
                fetched = await self._fetcher.fetch(
                    container, after=container.watermark, limit=self._fetch_limit
                )
                result.fetched = len(fetched.records)
                result.pages = fetched.pages
                result.partial = not fetched.complete

                batch = reconcile(fetched.records)
                if not batch.empty:
                    await self._commit_shielded(batch, fetched, result)

                if fetched.error is not None:
                    result.error = type(fetched.error).__name__
            except asyncio.CancelledError:
                # A shielded write unit keeps filling in this result.
                logger.warning(
                    "Sync cancelled for container %s (%s)", container.id, container.name
                )
                result.error = "CancelledError"
                report.results.append(result)
                raise
            except Exception as exc:
                logger.exception(
                    "Sync failed for container %s (%s)", container.id, container.name
                )
                result.error = type(exc).__name__

            progress.update(result.fetched, result.inserted)
            if result.ok:
                progress.log_complete()
            else:
                progress.log_failed()
            run_progress.update_from_container(progress, failed=not result.ok)
            report.results.append(result)

        await self._audit_log(
            "sync_container",
            {
                "container_id": container.id,
                "container_name": container.name,
                "fetched": result.fetched,
                "pages": result.pages,
                "inserted": result.inserted,
                "failed_rows": result.failed_rows,
                "partial": result.partial,
                "previous_watermark": container.watermark,
                "watermark": result.watermark,
                "error": result.error,
            },
            success=result.ok,
        )
        return result

    # ------------------------------------------------------------------
    # Write unit
    # ------------------------------------------------------------------

    async def _commit_shielded(
        self,
        batch: ReconcileResult,
        fetched: FetchResult,
        result: ContainerResult,
    ) -> None:
        task = asyncio.ensure_future(self._commit(batch, fetched, result))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        await asyncio.shield(task)

    async def _commit(
        self,
        batch: ReconcileResult,
        fetched: FetchResult,
        result: ContainerResult,
    ) -> None:
        written = await self._writer.write(batch.groups, batch.containers, batch.records)
        result.inserted = written.inserted
        result.failed_rows = written.failed

        if fetched.error is not None:
            logger.info(
                "Fetch for container %s ended early; watermark left unchanged",
                result.container.id,
            )
            return
        if written.failed:
            logger.warning(
                "%d row(s) failed for container %s; watermark left unchanged",
                written.failed,
                result.container.id,
            )
            return

        # A truncated fetch holds the oldest records past the watermark, so
        # advancing to its newest record skips nothing.
        advanced = await self._writer.advance_watermarks(batch.newest_per_container)
        result.watermark = advanced.get(result.container.id)

    async def drain(self) -> None:
        """Wait for write units still running after their run was cancelled."""
        if self._inflight:
            logger.info("Waiting for %d in-flight write unit(s)", len(self._inflight))
            await asyncio.gather(*self._inflight, return_exceptions=True)
