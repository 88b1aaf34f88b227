"""
Pagination Walker

Drives cursor-paginated calls. Each page is expected to expose
`pagination.has_more` and `pagination.cursor`, either as dict keys or as
attributes.
"""

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from shared.schemas import PaginationRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 100

FetchPage = Callable[[Optional[PaginationRequest]], Awaitable[Any]]


def _get(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def next_cursor(page: Any) -> Optional[str]:
    """Cursor for the following page, or None when the collection is exhausted"""
    pagination = _get(page, "pagination")
    if not pagination or not _get(pagination, "has_more"):
        return None
    return _get(pagination, "cursor") or None


def _request(cursor: Optional[str], page_size: Optional[int]) -> Optional[PaginationRequest]:
    # The first call goes out without pagination params unless a size was asked for
    if cursor is None and page_size is None:
        return None
    return PaginationRequest(cursor=cursor, max_results=page_size)


async def walk(
    fetch_page: FetchPage,
    page_size: Optional[int] = None,
    max_pages: int = DEFAULT_MAX_PAGES
) -> AsyncIterator[Any]:
    """
    Yield pages lazily.

    Args:
        fetch_page: Coroutine taking a PaginationRequest (None for the first
                    page when no page size is set) and returning a page
        page_size: Requested page size forwarded to fetch_page
        max_pages: Hard stop on the number of pages fetched

    Yields:
        Page objects in server order
    """
    cursor = None
    pages = 0

    while pages < max_pages:
        page = await fetch_page(_request(cursor, page_size))
        pages += 1
        yield page

        cursor = next_cursor(page)
        if cursor is None:
            return

    logger.warning(f"Pagination stopped after reaching max_pages={max_pages}")


async def collect(
    fetch_page: FetchPage,
    extract_items: Callable[[Any], Optional[List[Any]]],
    page_size: Optional[int] = None,
    max_items: Optional[int] = None,
    max_pages: int = DEFAULT_MAX_PAGES
) -> List[Any]:
    """
    Fetch every item of a paginated collection.

    The max_items bound is checked after each page, and the result is
    truncated to exactly max_items.

    Args:
        fetch_page: Coroutine returning one page
        extract_items: Pulls the item list out of a page
        page_size: Requested page size forwarded to fetch_page
        max_items: Stop once this many items were collected
        max_pages: Hard stop on the number of pages fetched

    Returns:
        Items concatenated in page order
    """
    items: List[Any] = []

    async for page in walk(fetch_page, page_size=page_size, max_pages=max_pages):
        items.extend(extract_items(page) or [])
        if max_items is not None and len(items) >= max_items:
            break

    if max_items is not None:
        return items[:max_items]
    return items
