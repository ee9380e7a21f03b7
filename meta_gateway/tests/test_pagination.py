"""Unit tests for cursor pagination and batch helpers.

REFERENCES:
    - meta_gateway/services/pagination.py (module under test)
"""

import pytest

from meta_gateway.schemas import Campaign
from meta_gateway.services.pagination import (
    PaginatedResult,
    PaginationParams,
    build_page_info,
    build_pagination_params,
    chunked,
    collect_all_pages,
    extract_cursor_from_url,
    fetch_all_pages,
    get_next_page_params,
    get_previous_page_params,
    parse_paginated_response,
    process_batches,
)


class TestParsePaginatedResponse:
    def test_after_cursor_only(self):
        """WHAT: after="X" and no before -> next page only.
        WHY: has_next_page is true iff cursor_after is present.
        """
        raw = {"data": [{"id": "1"}], "paging": {"cursors": {"after": "X"}}}

        result = parse_paginated_response(raw)

        assert result.has_next_page is True
        assert result.has_previous_page is False
        assert result.cursor_after == "X"
        assert result.cursor_before is None

    def test_missing_paging_defaults(self):
        result = parse_paginated_response({"data": [{"id": "1"}, {"id": "2"}]})

        assert len(result) == 2
        assert not result.has_next_page
        assert not result.has_previous_page
        assert result.cursor_after is None

    def test_empty_page_with_cursor_is_tolerated(self):
        """WHAT: Zero rows plus a cursor is a normal page, not an error."""
        result = parse_paginated_response({"data": [], "paging": {"cursors": {"before": "B", "after": "A"}}})

        assert result.data == []
        assert result.has_next_page
        assert result.has_previous_page

    def test_empty_string_cursor_means_no_page(self):
        result = parse_paginated_response({"data": [], "paging": {"cursors": {"after": ""}}})
        assert not result.has_next_page
        assert result.cursor_after is None

    def test_order_preserved_and_items_parsed(self):
        raw = {"data": [{"id": "3", "name": "c"}, {"id": "1", "name": "a"}, {"id": "2", "name": "b"}]}

        result = parse_paginated_response(raw, Campaign.model_validate)

        assert [c.id for c in result] == ["3", "1", "2"]
        assert all(isinstance(c, Campaign) for c in result)


class TestPageParams:
    def test_build_pagination_params(self):
        assert build_pagination_params(PaginationParams(limit=25, after="A")) == {"limit": "25", "after": "A"}
        assert build_pagination_params(PaginationParams(limit=0)) == {}

    def test_next_and_previous(self):
        result = PaginatedResult(data=[], cursor_before="B", cursor_after="A", has_next_page=True, has_previous_page=True)

        assert get_next_page_params(result, 10) == PaginationParams(limit=10, after="A")
        assert get_previous_page_params(result, 10) == PaginationParams(limit=10, before="B")

    def test_no_next_page(self):
        result = PaginatedResult(data=[])
        assert get_next_page_params(result) is None
        assert get_previous_page_params(result) is None

    def test_extract_cursor_from_url(self):
        url = "https://graph.facebook.com/v23.0/act_1/campaigns?limit=25&after=QVFIUk"
        assert extract_cursor_from_url(url) == "QVFIUk"
        assert extract_cursor_from_url(None) is None
        assert extract_cursor_from_url("https://graph.facebook.com/v23.0/me") is None

    def test_build_page_info(self):
        result = PaginatedResult(data=[], cursor_after="A", has_next_page=True)
        assert build_page_info(result) == {
            "has_next_page": True,
            "has_previous_page": False,
            "start_cursor": None,
            "end_cursor": "A",
        }


class TestTraversal:
    @staticmethod
    def pages(total_pages):
        """fetch_page callable over `total_pages` pages of 2 rows each."""
        calls = []

        async def _fetch(params: PaginationParams) -> PaginatedResult:
            calls.append(params)
            index = int(params.after) if params.after else 0
            after = str(index + 1) if index + 1 < total_pages else None
            return PaginatedResult(
                data=[f"{index}-a", f"{index}-b"], cursor_after=after, has_next_page=after is not None
            )

        return _fetch, calls

    @pytest.mark.asyncio
    async def test_fetch_all_pages_follows_cursor(self):
        fetch, calls = self.pages(3)

        pages = [page async for page in fetch_all_pages(fetch, PaginationParams(limit=2))]

        assert pages == [["0-a", "0-b"], ["1-a", "1-b"], ["2-a", "2-b"]]
        assert [p.after for p in calls] == [None, "1", "2"]
        assert all(p.limit == 2 for p in calls)

    @pytest.mark.asyncio
    async def test_fetch_all_pages_respects_max_pages(self):
        fetch, calls = self.pages(10)

        pages = [page async for page in fetch_all_pages(fetch, max_pages=2)]

        assert len(pages) == 2
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_collect_all_pages_trims_to_max_items(self):
        fetch, _ = self.pages(10)

        items = await collect_all_pages(fetch, max_items=5)

        assert items == ["0-a", "0-b", "1-a", "1-b", "2-a"]


class TestBatches:
    def test_chunked(self):
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert chunked([], 3) == []
        with pytest.raises(ValueError):
            chunked([1], 0)

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        """WHAT: 3 sub-operations, the 2nd fails -> succeeded=2, failed=1, error kept.
        WHY: One bad unit must not abort the whole batch.
        """

        async def _process(batch):
            if batch == ["two"]:
                raise RuntimeError("creative rejected")
            return batch[0].upper()

        result = await process_batches(["one", "two", "three"], _process, batch_size=1, label="creative")

        assert result.succeeded == 2
        assert result.failed == 1
        assert result.total == 3
        assert result.results == ["ONE", "THREE"]
        assert len(result.errors) == 1
        assert "creative rejected" in result.errors[0]
        assert result.errors[0].startswith("creative 2/3")

    @pytest.mark.asyncio
    async def test_counts_rows_not_chunks(self):
        async def _process(batch):
            return len(batch)

        result = await process_batches(list(range(25)), _process, batch_size=10)

        assert result.succeeded == 25
        assert result.results == [10, 10, 5]
