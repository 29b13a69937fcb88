"""Grok adapter: page-token list, several unstable detail endpoints, trailing-query pairing."""

import re
from typing import Any, List, Optional, Tuple

from services.chat_extractor.base import SourceAdapter
from services.chat_extractor.pairing import Message
from shared.models import Thread, ThreadDetail
from shared.normalizer import get_path


def _message_content(message: dict) -> str:
    content = message.get("content") or message.get("text") or message.get("message")
    if isinstance(content, str):
        return content
    parts = message.get("parts")
    if isinstance(parts, list):
        return "\n".join(p for p in parts if isinstance(p, str))
    return ""


class GrokAdapter(SourceAdapter):
    """Adapter for grok.com."""

    platform = "grok"
    base_url = "https://grok.com"
    id_patterns = (
        re.compile(r"grok\.com/(?:chat|c|conversation)/([a-zA-Z0-9_-]+)"),
        re.compile(r"x\.com/i/grok/([a-zA-Z0-9_-]+)"),
    )
    pair_trailing_with_last = True

    def thread_url(self, thread_id: str) -> str:
        return f"{self.base_url}/c/{thread_id}"

    async def _list(self, page_token: Optional[str], limit: int) -> Tuple[List[Thread], Optional[str]]:
        params = {"pageSize": limit}
        if page_token:
            params["pageToken"] = page_token
        data = await self._request_json("GET", "/rest/app-chat/conversations", params=params)
        raw_items = None
        for expr in ("conversations", "data", "items"):
            raw_items = get_path(data, expr)
            if isinstance(raw_items, list):
                break
        threads = self._threads(raw_items)
        return threads, (get_path(data, "nextPageToken") or None)

    def list_endpoints(self, cursor: Any, limit: int):
        return [("app_chat", lambda: self._list(cursor, limit))]

    async def _conversation(self, thread_id: str, path: str, params: Optional[dict] = None) -> ThreadDetail:
        data = await self._request_json("GET", path, params=params)
        raw_messages = None
        for expr in ("messages", "conversation.messages", "data.messages", "turns", "responses", "items"):
            raw_messages = get_path(data, expr)
            if isinstance(raw_messages, list) and raw_messages:
                break
        if not isinstance(raw_messages, list) or not raw_messages:
            raise self._unrecognized("detail")

        messages = [
            Message(
                role=(m.get("role") or m.get("sender") or m.get("author") or m.get("type") or ""),
                content=_message_content(m),
            )
            for m in raw_messages if isinstance(m, dict)
        ]
        title_source = get_path(data, "conversation") if isinstance(get_path(data, "conversation"), dict) else data
        return self._detail_from_messages(thread_id, title_source, messages)

    def detail_endpoints(self, thread_id: str):
        return [
            ("conversations_v2", lambda: self._conversation(
                thread_id,
                f"/rest/app-chat/conversations_v2/{thread_id}",
                {"includeWorkspaces": "true", "includeTaskResult": "true"},
            )),
            ("conversation", lambda: self._conversation(thread_id, f"/rest/app-chat/conversation/{thread_id}")),
            ("api_conversation", lambda: self._conversation(thread_id, f"/api/conversation/{thread_id}")),
        ]
