"""Cursor cache that answers offset/limit windows over cursor-paginated listings."""

import bisect
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from shared.clock import Clock
from shared.errors import SyncError
from shared.models import Thread, ThreadPage

logger = logging.getLogger(__name__)

# fetch_page(cursor, page_size) -> (items, next_cursor); next_cursor None means exhausted
FetchPage = Callable[[Optional[Any], int], Awaitable[Tuple[List[Thread], Optional[Any]]]]
ProgressCallback = Callable[[int, bool], None]


class CursorCache:
    """
    Translate (offset, limit) requests into forward cursor walks.

    Breakpoints map a cumulative item index to the cursor that starts there, so
    a request at a deep offset resumes from the closest known breakpoint rather
    than from the first page. Page and full-listing results are cached for
    ``ttl`` seconds.

    Platforms with page-number pagination use the integer offset as cursor;
    platforms without pagination return a single page with next cursor None.
    """

    def __init__(
        self,
        fetch_page: FetchPage,
        page_size: int = 50,
        ttl: float = 60.0,
        clock: Optional[Clock] = None,
        page_delay: Tuple[float, float] = (0.15, 0.3),
        max_items: int = 5000,
        max_pages: int = 100,
        rng: Optional[random.Random] = None
    ):
        self.fetch_page = fetch_page
        self.page_size = page_size
        self.ttl = ttl
        self.clock = clock or Clock()
        self.page_delay = page_delay
        self.max_items = max_items
        self.max_pages = max_pages
        self.rng = rng or random.Random()
        self.network_calls = 0
        self.invalidate()

    def invalidate(self) -> None:
        """Drop every cached page and breakpoint except the origin."""
        self._breakpoints: List[Tuple[int, Any]] = [(0, None)]
        self._pages: Dict[int, Tuple[float, List[Thread], Optional[Any]]] = {}
        self._full: Optional[Tuple[float, List[Thread]]] = None

    @property
    def breakpoints(self) -> List[Tuple[Any, int]]:
        """Known (cursor, cumulative_index) pairs in index order."""
        return [(cursor, index) for index, cursor in self._breakpoints]

    def _fresh(self, fetched_at: float) -> bool:
        return self.clock.now() - fetched_at < self.ttl

    def _record_breakpoint(self, index: int, cursor: Any) -> None:
        indexes = [i for i, _ in self._breakpoints]
        position = bisect.bisect_left(indexes, index)
        if position < len(indexes) and indexes[position] == index:
            return
        self._breakpoints.insert(position, (index, cursor))

    def _breakpoint_for(self, offset: int) -> Tuple[int, Any]:
        indexes = [i for i, _ in self._breakpoints]
        position = bisect.bisect_right(indexes, offset) - 1
        return self._breakpoints[max(position, 0)]

    async def _pause(self) -> None:
        await self.clock.sleep(self.rng.uniform(*self.page_delay))

    async def _page_at(self, index: int, cursor: Any, delay: bool) -> Tuple[List[Thread], Optional[Any], bool]:
        """Return (items, next_cursor, fetched_from_network) for the page starting at index."""
        cached = self._pages.get(index)
        if cached and self._fresh(cached[0]):
            return cached[1], cached[2], False

        if delay:
            await self._pause()
        self.network_calls += 1
        items, next_cursor = await self.fetch_page(cursor, self.page_size)
        self._pages[index] = (self.clock.now(), items, next_cursor)
        if next_cursor is not None and items:
            self._record_breakpoint(index + len(items), next_cursor)
        return items, next_cursor, True

    def _full_listing(self) -> Optional[List[Thread]]:
        if self._full and self._fresh(self._full[0]):
            return self._full[1]
        return None

    async def resolve(self, offset: int, limit: int) -> ThreadPage:
        """
        Return the window [offset, offset + limit) of the listing.

        Served without network calls when a fresh full listing covers it.
        """
        if offset < 0 or limit <= 0:
            raise ValueError("offset must be >= 0 and limit > 0")

        full = self._full_listing()
        if full is not None:
            return ThreadPage(
                items=full[offset:offset + limit],
                has_more=offset + limit < len(full),
                offset=offset,
                total=len(full),
            )

        start, cursor = self._breakpoint_for(offset)
        end = offset + limit
        index = start
        collected: List[Thread] = []
        exhausted = False
        fetched_any = False

        while index < end:
            items, next_cursor, fetched = await self._page_at(index, cursor, delay=fetched_any)
            fetched_any = fetched_any or fetched
            collected.extend(items)
            if next_cursor is None or not items:
                exhausted = True
                break
            index += len(items)
            cursor = next_cursor

        window = collected[offset - start:offset - start + limit]
        has_more = not exhausted or start + len(collected) > end
        return ThreadPage(
            items=window,
            has_more=has_more,
            offset=offset,
            total=start + len(collected) if exhausted else None,
        )

    async def list_all(self, progress: Optional[ProgressCallback] = None) -> List[Thread]:
        """
        Walk the whole listing, deduplicating by id.

        Stops when pages run out, at ``max_items`` or ``max_pages``, or on an
        error. A failure on the first page propagates; a later one returns what
        was collected so far. Only a complete walk refreshes the full cache.
        """
        full = self._full_listing()
        if full is not None:
            return list(full)

        items: List[Thread] = []
        seen = set()
        cursor = None
        index = 0
        pages = 0
        complete = False

        while pages < self.max_pages and len(items) < self.max_items:
            try:
                page_items, next_cursor, _ = await self._page_at(index, cursor, delay=pages > 0)
            except SyncError as e:
                if not items:
                    raise
                logger.warning(f"Listing stopped after {len(items)} items: {e}")
                break

            for thread in page_items:
                if thread.id not in seen:
                    seen.add(thread.id)
                    items.append(thread)

            has_more = next_cursor is not None and bool(page_items)
            if progress:
                progress(len(items), has_more)
            if not has_more:
                complete = True
                break

            index += len(page_items)
            cursor = next_cursor
            pages += 1

        items = items[:self.max_items]
        if complete:
            self._full = (self.clock.now(), items)
        else:
            logger.info(f"Listing capped at {len(items)} items after {pages} pages")
        return list(items)
