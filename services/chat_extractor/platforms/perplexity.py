"""Perplexity adapter: offset-paginated thread list, cursor-paged thread detail, collections."""

import logging
import re
from typing import Any, List, Optional, Tuple

from services.chat_extractor.base import SourceAdapter
from shared.errors import AuthError, SyncError
from shared.models import Collection, Thread, ThreadDetail
from shared.normalizer import get_path

logger = logging.getLogger(__name__)


class PerplexityAdapter(SourceAdapter):
    """Adapter for www.perplexity.ai."""

    platform = "perplexity"
    base_url = "https://www.perplexity.ai"
    id_patterns = (
        re.compile(r"perplexity\.ai/(?:search|thread|page)/([^/?#]+)"),
    )
    page_size = 20
    api_version = "2.18"
    fallback_version = "2.17"
    first_detail_page = 10
    detail_page = 100
    max_detail_pages = 50

    def thread_url(self, thread_id: str) -> str:
        return f"{self.base_url}/search/{thread_id}"

    # Listing

    async def _list_rest(self, version: str, offset: int, limit: int) -> Tuple[List[Thread], Optional[int]]:
        data = await self._request_json(
            "POST",
            "/rest/thread/list_ask_threads",
            params={"version": version, "source": "default"},
            json={"limit": limit, "offset": offset, "ascending": False},
        )
        raw_items = data if isinstance(data, list) else get_path(data, "threads")
        threads = self._threads(raw_items)
        next_offset = offset + len(raw_items) if len(raw_items) >= limit else None
        return threads, next_offset

    async def _list_api(self, offset: int, limit: int) -> Tuple[List[Thread], Optional[int]]:
        data = await self._request_json("GET", "/api/threads/list", params={"offset": offset, "limit": limit})
        raw_items = data if isinstance(data, list) else get_path(data, "threads")
        threads = self._threads(raw_items)
        next_offset = offset + len(raw_items) if len(raw_items) >= limit else None
        return threads, next_offset

    def list_endpoints(self, cursor: Any, limit: int):
        offset = cursor or 0
        return [
            ("rest", lambda: self._list_rest(self.api_version, offset, limit)),
            ("rest_previous_version", lambda: self._list_rest(self.fallback_version, offset, limit)),
            ("api", lambda: self._list_api(offset, limit)),
        ]

    # Detail

    async def _detail_rest(self, thread_id: str, path: str, version: str) -> ThreadDetail:
        raw_entries = []
        seen = set()
        cursor = None
        title = None

        for page in range(self.max_detail_pages):
            params = {
                "with_parent_info": "true",
                "with_schematized_response": "true",
                "version": version,
                "source": "default",
                "limit": self.first_detail_page if page == 0 else self.detail_page,
            }
            if cursor:
                params["cursor"] = cursor

            data = await self._request_json("GET", path, params=params)
            entries = get_path(data, "entries")
            if not isinstance(entries, list):
                raise self._unrecognized("detail")

            title = title or get_path(data, "entries.0.thread_title") or get_path(data, "title")
            for entry in entries:
                entry_id = entry.get("uuid") or entry.get("backend_uuid") if isinstance(entry, dict) else None
                if entry_id:
                    if entry_id in seen:
                        continue
                    seen.add(entry_id)
                raw_entries.append(entry)

            cursor = get_path(data, "next_cursor")
            if not cursor or not entries:
                break
        else:
            logger.warning(f"[perplexity] Stopped paging {thread_id} after {self.max_detail_pages} pages")

        return self._detail_from_entries(thread_id, {"entries": raw_entries, "title": title})

    def detail_endpoints(self, thread_id: str):
        return [
            ("rest", lambda: self._detail_rest(thread_id, f"/rest/thread/{thread_id}", self.api_version)),
            ("rest_previous_version", lambda: self._detail_rest(
                thread_id, f"/rest/thread/{thread_id}", self.fallback_version)),
            ("api", lambda: self._detail_rest(thread_id, f"/api/threads/{thread_id}", self.api_version)),
        ]

    # Collections

    async def _collections(self, path: str) -> List[Collection]:
        data = await self._request_json("GET", path, params={"version": self.api_version, "source": "default"})
        raw_items = data if isinstance(data, list) else get_path(data, "collections")
        if not isinstance(raw_items, list):
            raise self._unrecognized("collections")
        collections = []
        for raw in raw_items:
            if not isinstance(raw, dict) or not raw.get("uuid"):
                continue
            collections.append(Collection(
                id=raw["uuid"],
                name=raw.get("title") or raw.get("name") or "Untitled",
                platform=self.platform,
            ))
        return collections

    async def list_collections(self) -> List[Collection]:
        """Perplexity spaces; an empty list when neither endpoint answers."""
        try:
            return await self._try_endpoints("collections", [
                ("rest", lambda: self._collections("/rest/collections/list")),
                ("api", lambda: self._collections("/api/collections")),
            ])
        except AuthError:
            raise
        except SyncError as e:
            logger.warning(f"[perplexity] Could not list collections: {e}")
            return []
