"""Gemini adapter: Google batchexecute RPC envelope."""

import json
import logging
import re
from typing import Any, List, Optional, Tuple

from services.chat_extractor.base import SourceAdapter
from services.chat_extractor.pairing import Message
from shared.models import Thread, ThreadDetail

logger = logging.getLogger(__name__)

LIST_RPC = "MaZiqc"
DETAIL_RPC = "hNvQHb"
XSSI_PREFIX = ")]}'"


def build_batch_request(rpc_id: str, payload: Any) -> str:
    """Encode the ``f.req`` form field for a single RPC."""
    return json.dumps([[rpc_id, json.dumps(payload), None, "generic"]])


def parse_batch_response(text: str) -> Any:
    """
    Decode a batchexecute response body.

    Strips the anti-XSSI prefix, takes the first line that is a JSON array,
    and decodes the inner JSON string found at ``[0][2]``.

    Returns:
        The decoded RPC payload, or None when the envelope is empty
    """
    cleaned = text.strip()
    if cleaned.startswith(XSSI_PREFIX):
        cleaned = cleaned[len(XSSI_PREFIX):].strip()

    for line in cleaned.splitlines():
        line = line.strip()
        if not line.startswith("["):
            continue
        try:
            envelope = json.loads(line)
        except ValueError:
            continue
        try:
            inner = envelope[0][2]
        except (IndexError, TypeError):
            return None
        if not isinstance(inner, str):
            return None
        return json.loads(inner)
    return None


def _turn_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(v for v in value if isinstance(v, str))
    return ""


class GeminiAdapter(SourceAdapter):
    """Adapter for gemini.google.com."""

    platform = "gemini"
    base_url = "https://gemini.google.com"
    id_patterns = (
        re.compile(r"gemini\.google\.com/(?:app|gem|c)/([a-zA-Z0-9_-]+)"),
    )
    page_size = 20
    rpc_path = "/_/BardChatUi/data/batchexecute"

    def thread_url(self, thread_id: str) -> str:
        if thread_id.startswith("c_"):
            thread_id = thread_id[2:]
        return f"{self.base_url}/app/{thread_id}"

    async def _batch_execute(self, rpc_id: str, payload: Any) -> Any:
        response = await self._send(
            "POST",
            self.rpc_path,
            params={"rpcids": rpc_id, "source-path": "/app", "bl": "boq_assistant-bard-web-server"},
            data={"f.req": build_batch_request(rpc_id, payload)},
            headers={"Content-Type": "application/x-www-form-urlencoded;charset=UTF-8"},
        )
        try:
            data = parse_batch_response(response.text)
        except ValueError as e:
            raise self._unrecognized(rpc_id) from e
        if data is None:
            raise self._unrecognized(rpc_id)
        return data

    async def _list(self, cursor: Optional[str], limit: int) -> Tuple[List[Thread], Optional[str]]:
        data = await self._batch_execute(LIST_RPC, [limit, cursor, [0, None, 1]])
        if not isinstance(data, list) or not data:
            raise self._unrecognized("listing")
        threads = self._threads(data[0] or [])
        next_cursor = data[1] if len(data) > 1 and isinstance(data[1], str) else None
        return threads, next_cursor

    def list_endpoints(self, cursor: Any, limit: int):
        return [("batchexecute", lambda: self._list(cursor, limit))]

    async def _conversation(self, thread_id: str) -> ThreadDetail:
        data = await self._batch_execute(DETAIL_RPC, [thread_id, 50, None, 1, [0], [4], None, 1])
        turns = None
        if isinstance(data, list):
            turns = next((d for d in data[:2] if isinstance(d, list) and d), None)
        if not turns:
            raise self._unrecognized("detail")

        messages = []
        for turn in turns:
            if not isinstance(turn, list):
                continue
            content = ""
            for index in (1, 2):
                if len(turn) > index and isinstance(turn[index], list) and turn[index]:
                    content = _turn_text(turn[index][0])
                    if content:
                        break
            role = turn[3] if len(turn) > 3 else None
            messages.append(Message(role="user" if role in (0, "user") else "model", content=content))

        return self._detail_from_messages(thread_id, {}, messages)

    def detail_endpoints(self, thread_id: str):
        return [("batchexecute", lambda: self._conversation(thread_id))]
