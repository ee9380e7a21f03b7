"""Cursor pagination and chunked batch helpers for the Graph API.

WHAT:
    - parse_paginated_response: raw `{data, paging}` envelope -> PaginatedResult
    - page parameter builders for explicit next/previous navigation
    - fetch_all_pages / collect_all_pages: caller-driven traversal
    - chunked / process_batches: split large payloads and submit them
      sequentially with partial-failure accounting

WHY:
    Meta returns list endpoints as `{"data": [...], "paging": {"cursors":
    {"before": ..., "after": ...}, "next": ...}}`. Every list operation in
    MetaApiClient hands its response through here so callers see one
    traversal contract.

    The parser never fetches anything. A caller that wants the next page
    passes `cursor_after` back into the client as `after`, which keeps every
    fetch a single retryable operation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    Optional,
    Sequence,
    TypeVar,
)
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 50


@dataclass(frozen=True)
class PaginatedResult(Generic[T]):
    """One page of a list endpoint.

    `has_next_page` is true iff `cursor_after` is present and non-empty. A
    cursor does not promise the next page has rows; an empty page that still
    carries a cursor is normal.
    """

    data: List[T]
    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None
    has_next_page: bool = False
    has_previous_page: bool = False

    def __iter__(self) -> Iterator[T]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class PaginationParams:
    limit: Optional[int] = None
    after: Optional[str] = None
    before: Optional[str] = None


@dataclass
class BatchResult(Generic[R]):
    """Aggregate outcome of a chunked/batched submission."""

    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    results: List[R] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _cursor(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def parse_paginated_response(
    raw: Dict[str, Any],
    item_parser: Optional[Callable[[Dict[str, Any]], T]] = None,
) -> PaginatedResult[T]:
    """Turn a raw Graph API list envelope into a PaginatedResult.

    Args:
        raw: Decoded JSON body, e.g. {"data": [...], "paging": {...}}
        item_parser: Optional callable applied to each row (e.g. a pydantic
            model's `model_validate`); rows pass through untouched otherwise

    Returns:
        PaginatedResult with rows in provider order. A missing `paging`
        object yields no cursors and both flags False.
    """
    rows = raw.get("data") or []
    paging = raw.get("paging") or {}
    cursors = paging.get("cursors") or {}

    before = _cursor(cursors.get("before"))
    after = _cursor(cursors.get("after"))

    data = [item_parser(row) for row in rows] if item_parser else list(rows)

    return PaginatedResult(
        data=data,
        cursor_before=before,
        cursor_after=after,
        has_next_page=after is not None,
        has_previous_page=before is not None,
    )


def build_pagination_params(params: PaginationParams) -> Dict[str, str]:
    """Query parameters for a page request. Non-positive limits are dropped."""
    query: Dict[str, str] = {}
    if params.limit is not None and params.limit > 0:
        query["limit"] = str(params.limit)
    if params.after:
        query["after"] = params.after
    if params.before:
        query["before"] = params.before
    return query


def get_next_page_params(result: PaginatedResult[Any], current_limit: Optional[int] = None) -> Optional[PaginationParams]:
    if not result.has_next_page:
        return None
    return PaginationParams(limit=current_limit, after=result.cursor_after)


def get_previous_page_params(result: PaginatedResult[Any], current_limit: Optional[int] = None) -> Optional[PaginationParams]:
    if not result.has_previous_page:
        return None
    return PaginationParams(limit=current_limit, before=result.cursor_before)


def extract_cursor_from_url(url: Optional[str]) -> Optional[str]:
    """Pull the `after` (or `before`) cursor out of a paging.next/previous URL."""
    if not url:
        return None
    try:
        query = parse_qs(urlparse(url).query)
    except ValueError:
        return None
    for key in ("after", "before"):
        values = query.get(key)
        if values and values[0]:
            return values[0]
    return None


def build_page_info(result: PaginatedResult[Any]) -> Dict[str, Any]:
    """Relay-style page info for tool responses."""
    return {
        "has_next_page": result.has_next_page,
        "has_previous_page": result.has_previous_page,
        "start_cursor": result.cursor_before,
        "end_cursor": result.cursor_after,
    }


async def fetch_all_pages(
    fetch_page: Callable[[PaginationParams], Awaitable[PaginatedResult[T]]],
    initial_params: Optional[PaginationParams] = None,
    max_pages: int = 100,
) -> AsyncIterator[List[T]]:
    """Yield each page's rows, following `cursor_after` until exhausted.

    Each page is one explicit `fetch_page` call made by this generator's
    consumer; nothing is prefetched. Stops at `max_pages`.
    """
    params = initial_params or PaginationParams()
    pages = 0

    while pages < max_pages:
        result = await fetch_page(params)
        pages += 1
        yield result.data

        next_params = get_next_page_params(result, params.limit)
        if next_params is None:
            break
        params = next_params


async def collect_all_pages(
    fetch_page: Callable[[PaginationParams], Awaitable[PaginatedResult[T]]],
    initial_params: Optional[PaginationParams] = None,
    max_pages: int = 50,
    max_items: int = 5000,
) -> List[T]:
    """Gather rows across pages, trimmed to `max_items`."""
    items: List[T] = []
    async for page in fetch_all_pages(fetch_page, initial_params, max_pages):
        items.extend(page)
        if len(items) >= max_items:
            del items[max_items:]
            break
    return items


def chunked(items: Sequence[T], size: int = DEFAULT_BATCH_SIZE) -> List[List[T]]:
    """Split `items` into consecutive lists of at most `size`."""
    if size <= 0:
        raise ValueError("Batch size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def process_batches(
    items: Sequence[T],
    processor: Callable[[List[T]], Awaitable[R]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    delay: float = 0.0,
    label: str = "batch",
    count: Optional[Callable[[List[T]], int]] = None,
) -> BatchResult[R]:
    """Submit `items` in chunks, one chunk at a time.

    A failing chunk is recorded and the next chunk still runs; the whole
    operation never raises for a single chunk's failure.

    Args:
        items: Everything to submit
        processor: Coroutine that submits one chunk
        batch_size: Provider-imposed chunk size
        delay: Seconds to pause between chunks
        label: Prefix for log lines and error messages
        count: Units a chunk represents (defaults to len(chunk)); pass
            `lambda _: 1` to count chunks instead of rows

    Returns:
        BatchResult with succeeded/failed unit counts and error messages.
    """
    count = count or len
    batches = chunked(items, batch_size)
    outcome: BatchResult[R] = BatchResult()

    for index, batch in enumerate(batches, start=1):
        try:
            result = await processor(batch)
            outcome.results.append(result)
            outcome.succeeded += count(batch)
        except Exception as e:
            outcome.failed += count(batch)
            outcome.errors.append(f"{label} {index}/{len(batches)}: {e}")
            logger.warning(f"[PAGINATION] {label} {index}/{len(batches)} failed: {e}")

        if delay > 0 and index < len(batches):
            await asyncio.sleep(delay)

    logger.info(
        f"[PAGINATION] {label}: {outcome.succeeded} succeeded, {outcome.failed} failed "
        f"across {len(batches)} batches"
    )
    return outcome
