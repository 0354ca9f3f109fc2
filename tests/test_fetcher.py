"""
Unit tests for PaginatedFetcher: backward paging, exhaustion, bounded
forward walks and transient failures.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from archiver.fetcher import MAX_PAGE_SIZE, PaginatedFetcher, TransientUpstreamError
from conftest import make_container, make_records


@pytest.fixture
def container(upstream):
    container = make_container(1)
    upstream.add_container(container)
    return container


class TestPagination:
    @pytest.mark.asyncio
    async def test_250_records_in_three_pages(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 250))
        fetcher = PaginatedFetcher(upstream, page_size=100)

        result = await fetcher.fetch(container)

        assert len(result.records) == 250
        assert result.pages == 3
        assert result.complete
        calls = upstream.page_calls(container.id)
        assert [c[3] for c in calls] == [100, 100, 100]
        # Cursor is the oldest id of the previous page
        assert [c[1] for c in calls] == [None, "-1001:151", "-1001:51"]
        assert all(c[2] is None for c in calls)

    @pytest.mark.asyncio
    async def test_exact_page_multiple_needs_extra_empty_page(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 200))
        result = await PaginatedFetcher(upstream).fetch(container)
        assert len(result.records) == 200
        assert result.pages == 3

    @pytest.mark.asyncio
    async def test_records_are_newest_first_per_page(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 5))
        result = await PaginatedFetcher(upstream).fetch(container)
        assert [r.sequence for r in result.records] == [5, 4, 3, 2, 1]

    @pytest.mark.asyncio
    async def test_after_bound_passed_on_every_page(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 150))
        result = await PaginatedFetcher(upstream, page_size=50).fetch(
            container, after="-1001:40"
        )
        assert len(result.records) == 110
        assert min(r.sequence for r in result.records) == 41
        assert all(c[2] == "-1001:40" for c in upstream.page_calls(container.id))

    def test_page_size_capped(self, upstream):
        assert PaginatedFetcher(upstream, page_size=500).page_size == MAX_PAGE_SIZE
        assert PaginatedFetcher(upstream, page_size=0).page_size == 1


class TestEmpty:
    @pytest.mark.asyncio
    async def test_empty_container(self, upstream, container):
        result = await PaginatedFetcher(upstream).fetch(container)
        assert result.records == []
        assert result.pages == 1
        assert result.complete

    @pytest.mark.asyncio
    async def test_after_is_current_newest(self, upstream, container):
        """Watermark at the newest record: one empty page, no error."""
        upstream.add_records(container, make_records(container, 1, 10))
        result = await PaginatedFetcher(upstream).fetch(container, after="-1001:10")
        assert result.records == []
        assert result.error is None


class TestLimit:
    @pytest.mark.asyncio
    async def test_limit_walks_forward_from_watermark(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 250))
        result = await PaginatedFetcher(upstream, page_size=100).fetch(container, limit=150)

        assert [r.sequence for r in result.records] == list(range(1, 151))
        assert result.truncated
        assert not result.complete
        calls = upstream.page_calls(container.id)
        assert all(c[4] for c in calls)
        # Second request asks for the remaining 50 plus one to detect more
        assert [(c[2], c[3]) for c in calls] == [(None, 100), ("-1001:100", 51)]

    @pytest.mark.asyncio
    async def test_limit_resumes_after_watermark(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 250))
        result = await PaginatedFetcher(upstream).fetch(
            container, after="-1001:200", limit=100
        )
        assert [r.sequence for r in result.records] == list(range(201, 251))
        assert result.complete

    @pytest.mark.asyncio
    async def test_exactly_limit_records_is_complete(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 100))
        result = await PaginatedFetcher(upstream, page_size=100).fetch(container, limit=100)

        assert len(result.records) == 100
        assert not result.truncated
        assert result.complete
        # Full first page, then a one-record lookahead that comes back empty
        assert [c[3] for c in upstream.page_calls(container.id)] == [100, 1]

    @pytest.mark.asyncio
    async def test_one_record_over_limit_is_truncated(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 101))
        result = await PaginatedFetcher(upstream).fetch(container, limit=100)
        assert len(result.records) == 100
        assert max(r.sequence for r in result.records) == 100
        assert result.truncated

    @pytest.mark.asyncio
    async def test_limit_not_reached_is_complete(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 30))
        result = await PaginatedFetcher(upstream).fetch(container, limit=1000)
        assert len(result.records) == 30
        assert result.complete

    @pytest.mark.asyncio
    async def test_zero_limit_means_unbounded(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 120))
        result = await PaginatedFetcher(upstream).fetch(container, limit=0)
        assert len(result.records) == 120
        assert not result.truncated
        assert not any(c[4] for c in upstream.page_calls(container.id))


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_after_first_page_keeps_partial(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 250))
        upstream.fail_on_call[container.id] = 2

        result = await PaginatedFetcher(upstream).fetch(container)

        assert len(result.records) == 100
        assert result.pages == 1
        assert isinstance(result.error, TransientUpstreamError)
        assert not result.complete

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, container):
        source = AsyncMock()
        source.fetch_page.side_effect = asyncio.TimeoutError()
        result = await PaginatedFetcher(source).fetch(container)
        assert result.records == []
        assert isinstance(result.error, asyncio.TimeoutError)

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, container):
        source = AsyncMock()
        source.fetch_page.side_effect = KeyError("bug")
        with pytest.raises(KeyError):
            await PaginatedFetcher(source).fetch(container)


class TestPageDelay:
    @pytest.mark.asyncio
    async def test_sleeps_between_pages_only(self, upstream, container):
        upstream.add_records(container, make_records(container, 1, 250))
        with patch("archiver.fetcher.asyncio.sleep", new=AsyncMock()) as sleep:
            await PaginatedFetcher(upstream, page_delay=0.25).fetch(container)
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)
