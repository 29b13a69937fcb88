"""DeepSeek adapter: opaque-cursor session list, bearer token auth."""

import re
from typing import Any, List, Optional, Tuple

from services.chat_extractor.base import SourceAdapter
from services.chat_extractor.pairing import Message
from shared.models import Thread, ThreadDetail
from shared.normalizer import get_path, to_epoch


def _biz_data(data: Any) -> Any:
    for expr in ("data.biz_data", "biz_data", "data"):
        value = get_path(data, expr)
        if isinstance(value, dict):
            return value
    return data


class DeepSeekAdapter(SourceAdapter):
    """Adapter for chat.deepseek.com."""

    platform = "deepseek"
    base_url = "https://chat.deepseek.com"
    id_patterns = (
        re.compile(r"chat\.deepseek\.com(?:/a)?/chat/(?:s/)?([a-zA-Z0-9-]+)"),
        re.compile(r"chat\.deepseek\.com/.*[?&](?:s|session|chat_session_id)=([a-zA-Z0-9-]+)"),
    )

    def thread_url(self, thread_id: str) -> str:
        return f"{self.base_url}/a/chat/s/{thread_id}"

    async def _list(self, path: str, cursor: Optional[str], limit: int) -> Tuple[List[Thread], Optional[str]]:
        params = {"lte_cursor.pinned": "false"}
        if cursor:
            params["cursor"] = cursor
        data = await self._request_json("GET", path, params=params)
        biz = _biz_data(data)
        sessions = get_path(biz, "chat_sessions")
        if sessions is None:
            sessions = get_path(biz, "sessions")
        threads = self._threads(sessions)
        next_cursor = biz.get("next_cursor") or biz.get("cursor") if isinstance(biz, dict) else None
        has_more = biz.get("has_more", True) if isinstance(biz, dict) else False
        return threads, (next_cursor if has_more and sessions else None)

    def list_endpoints(self, cursor: Any, limit: int):
        return [
            ("fetch_page", lambda: self._list("/api/v0/chat_session/fetch_page", cursor, limit)),
            ("chat_list", lambda: self._list("/api/v0/chat/list", cursor, limit)),
        ]

    async def _history(self, thread_id: str) -> ThreadDetail:
        data = await self._request_json(
            "GET", "/api/v0/chat/history_messages", params={"chat_session_id": thread_id}
        )
        biz = _biz_data(data)
        raw_messages = get_path(biz, "chat_messages")
        if raw_messages is None:
            raw_messages = get_path(data, "data.messages") or get_path(data, "messages")
        if not isinstance(raw_messages, list):
            raise self._unrecognized("detail")

        messages = [
            Message(
                role=m.get("role") or m.get("author") or m.get("type") or "",
                content=m.get("content") or m.get("text") or m.get("message") or "",
                created_at=to_epoch(m.get("inserted_at")),
            )
            for m in raw_messages if isinstance(m, dict)
        ]
        title_source = get_path(biz, "chat_session") or data
        return self._detail_from_messages(thread_id, title_source, messages)

    def detail_endpoints(self, thread_id: str):
        return [("history_messages", lambda: self._history(thread_id))]
