"""
Paginated fetcher.

An unbounded fetch walks a container's history backward from "now"
toward the stored watermark.  A bounded fetch (``limit``) walks forward
from the watermark instead, oldest first, so every run archives the
next slice of history and the watermark can follow it.

The upstream contract (``RecordSource.fetch_page``) is "records older
than *before*, newer than *after*, at most *limit*", newest first unless
*oldest_first* is set.  Both bounds are exclusive.  Pages are requested
strictly one after another: each cursor is derived from the previous page.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from archiver.models import Container, Record, id_sequence

logger = logging.getLogger("archiver.fetcher")

# Telegram (and most chat APIs) cap history requests at 100 messages.
MAX_PAGE_SIZE = 100


class TransientUpstreamError(Exception):
    """Recoverable upstream failure (rate limit, timeout, dropped connection)."""


class RecordSource(Protocol):
    """Upstream boundary implemented per messaging platform."""

    async def list_containers(self, group_id: str) -> List[Container]:
        ...

    async def fetch_page(
        self,
        container: Container,
        before: Optional[str],
        after: Optional[str],
        limit: int,
        oldest_first: bool = False,
    ) -> List[Record]:
        ...


@dataclass
class FetchResult:
    """Outcome of one container fetch.

    ``error`` is set when a page failed; ``records`` then holds whatever
    was collected before the failure.  ``truncated`` means the limit cut
    the walk short and newer records remain upstream.
    """

    records: List[Record] = field(default_factory=list)
    pages: int = 0
    error: Optional[BaseException] = None
    truncated: bool = False

    @property
    def complete(self) -> bool:
        return self.error is None and not self.truncated


class PaginatedFetcher:
    """Fetches records newer than a watermark, one page at a time.

    Args:
        source: The upstream :class:`RecordSource`.
        page_size: Records per request, capped at :data:`MAX_PAGE_SIZE`.
        page_delay: Seconds to sleep between page requests.
    """

    def __init__(
        self,
        source: RecordSource,
        page_size: int = MAX_PAGE_SIZE,
        page_delay: float = 0.0,
    ) -> None:
        self._source = source
        self._page_size = max(1, min(MAX_PAGE_SIZE, int(page_size)))
        self._page_delay = max(0.0, float(page_delay))

    @property
    def page_size(self) -> int:
        return self._page_size

    async def fetch(
        self,
        container: Container,
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> FetchResult:
        """Collect records of *container* newer than *after*.

        Args:
            container: Container to read.
            after: Exclusive lower bound (the stored watermark), or ``None``
                   to start from the beginning of the history.
            limit: Maximum number of records to return; ``None`` or ``0``
                   means unbounded.  A bounded fetch returns the *limit*
                   oldest records newer than *after*.

        Returns:
            A :class:`FetchResult`; transient errors are reported in it,
            not raised.
        """
        if limit is not None and limit > 0:
            return await self._walk_forward(container, after, limit)
        return await self._walk_backward(container, after)

    async def _request(
        self,
        result: FetchResult,
        container: Container,
        before: Optional[str],
        after: Optional[str],
        size: int,
        oldest_first: bool,
    ) -> Optional[List[Record]]:
        if result.pages and self._page_delay:
            await asyncio.sleep(self._page_delay)
        try:
            page = await self._source.fetch_page(
                container, before, after, size, oldest_first=oldest_first
            )
        except (TransientUpstreamError, asyncio.TimeoutError, OSError) as exc:
            logger.warning(
                "Fetch aborted for container %s after %d page(s), %d record(s): %s",
                container.id,
                result.pages,
                len(result.records),
                exc,
            )
            result.error = exc
            return None

        result.pages += 1
        logger.debug(
            "Container %s page %d: %d record(s) (before=%s after=%s)",
            container.id,
            result.pages,
            len(page),
            before,
            after,
        )
        return page

    async def _walk_backward(
        self, container: Container, after: Optional[str]
    ) -> FetchResult:
        result = FetchResult()
        cursor: Optional[str] = None
        while True:
            page = await self._request(
                result, container, cursor, after, self._page_size, oldest_first=False
            )
            if page is None:
                break
            result.records.extend(page)
            if len(page) < self._page_size:
                break
            cursor = min(page, key=lambda rec: id_sequence(rec.id)).id
        return result

    async def _walk_forward(
        self, container: Container, after: Optional[str], limit: int
    ) -> FetchResult:
        # One record past the limit is requested so an exact fit is not
        # mistaken for a truncated walk.
        result = FetchResult()
        cursor = after
        while True:
            size = min(self._page_size, limit - len(result.records) + 1)
            page = await self._request(
                result, container, None, cursor, size, oldest_first=True
            )
            if page is None:
                break
            result.records.extend(page)
            if len(result.records) > limit:
                result.records = result.records[:limit]
                result.truncated = True
                break
            if len(page) < size:
                break
            cursor = max(page, key=lambda rec: id_sequence(rec.id)).id
        return result
