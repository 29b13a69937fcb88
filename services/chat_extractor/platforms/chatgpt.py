"""ChatGPT adapter: offset-paginated list, message-tree conversations."""

import re
from typing import Any, Dict, List, Optional, Tuple

from services.chat_extractor.base import SourceAdapter
from services.chat_extractor.pairing import Message
from shared.models import Thread, ThreadDetail
from shared.normalizer import to_epoch


def _content_text(content: Any) -> str:
    """Text of a message content object: parts, text, or a bare string."""
    if isinstance(content, str):
        return content
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if isinstance(parts, list):
        return "\n".join(p for p in parts if isinstance(p, str))
    text = content.get("text")
    return text if isinstance(text, str) else ""


def _node_message(node: Dict[str, Any]) -> Optional[Message]:
    message = node.get("message") if isinstance(node, dict) else None
    if not isinstance(message, dict):
        return None
    role = (message.get("author") or {}).get("role", "")
    if role == "system":
        return None
    content = _content_text(message.get("content"))
    if not content.strip():
        return None
    return Message(role=role, content=content, created_at=to_epoch(message.get("create_time")))


def walk_mapping(mapping: Dict[str, Any]) -> List[Message]:
    """
    Linearize a conversation tree.

    Starts at the root node (no parent) and follows the first child. When that
    yields nothing, falls back to every message sorted by creation time.
    """
    messages: List[Message] = []
    root = next(
        (key for key, node in mapping.items() if isinstance(node, dict) and not node.get("parent")),
        None,
    )
    visited = set()
    current = root
    while current and current in mapping and current not in visited:
        visited.add(current)
        node = mapping[current]
        message = _node_message(node)
        if message:
            messages.append(message)
        children = node.get("children") or []
        current = children[0] if children else None

    if messages:
        return messages

    everything = [m for m in (_node_message(node) for node in mapping.values()) if m]
    return sorted(everything, key=lambda m: m.created_at or 0)


class ChatGPTAdapter(SourceAdapter):
    """Adapter for chatgpt.com."""

    platform = "chatgpt"
    base_url = "https://chatgpt.com"
    id_patterns = (
        re.compile(r"(?:chatgpt\.com|chat\.openai\.com)/(?:g/[^/]+/)?c/([^/?#]+)"),
        re.compile(r"(?:chatgpt\.com|chat\.openai\.com)/(?:chat|conversation)/([^/?#]+)"),
    )
    page_size = 28

    def thread_url(self, thread_id: str) -> str:
        return f"{self.base_url}/c/{thread_id}"

    async def _list(self, path: str, offset: int, limit: int) -> Tuple[List[Thread], Optional[int]]:
        data = await self._request_json(
            "GET", path, params={"offset": offset, "limit": limit, "order": "updated"}
        )
        raw_items = data.get("items") if isinstance(data, dict) else None
        threads = self._threads(raw_items)
        consumed = offset + len(raw_items)
        total = data.get("total")
        if isinstance(total, int):
            has_more = consumed < total
        else:
            has_more = len(raw_items) >= limit
        return threads, (consumed if has_more and raw_items else None)

    def list_endpoints(self, cursor: Any, limit: int):
        offset = cursor or 0
        return [
            ("backend_api", lambda: self._list("/backend-api/conversations", offset, limit)),
            ("api", lambda: self._list("/api/conversations", offset, limit)),
        ]

    async def _conversation(self, thread_id: str, path: str) -> ThreadDetail:
        data = await self._request_json("GET", path)
        mapping = data.get("mapping") if isinstance(data, dict) else None
        if not isinstance(mapping, dict):
            raise self._unrecognized("detail")
        return self._detail_from_messages(thread_id, data, walk_mapping(mapping))

    def detail_endpoints(self, thread_id: str):
        return [
            ("backend_api", lambda: self._conversation(thread_id, f"/backend-api/conversation/{thread_id}")),
            ("api", lambda: self._conversation(thread_id, f"/api/conversation/{thread_id}")),
        ]
