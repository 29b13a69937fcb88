"""Claude adapter: organization-scoped, unpaginated conversation list."""

import logging
import re
from typing import Any, List, Optional, Tuple

from services.chat_extractor.base import SourceAdapter
from services.chat_extractor.pairing import Message
from shared.models import Thread, ThreadDetail
from shared.normalizer import to_epoch

logger = logging.getLogger(__name__)


def _message_text(message: dict) -> str:
    text = message.get("text")
    if isinstance(text, str) and text.strip():
        return text
    content = message.get("content")
    if isinstance(content, list):
        return "\n".join(
            block.get("text", "") for block in content
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )
    return ""


class ClaudeAdapter(SourceAdapter):
    """Adapter for claude.ai."""

    platform = "claude"
    base_url = "https://claude.ai"
    id_patterns = (
        re.compile(r"claude\.ai/(?:chat|conversation|thread)/([^/?#]+)"),
    )

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._organization_id: Optional[str] = None

    def thread_url(self, thread_id: str) -> str:
        return f"{self.base_url}/chat/{thread_id}"

    async def _fetch_organization(self, path: str) -> str:
        data = await self._request_json("GET", path)
        if not isinstance(data, list) or not data or not isinstance(data[0], dict) or not data[0].get("uuid"):
            raise self._unrecognized("organizations")
        return data[0]["uuid"]

    async def organization_id(self) -> str:
        """Organization uuid, looked up once and cached."""
        if self._organization_id is None:
            self._organization_id = await self._try_endpoints("organizations", [
                ("api", lambda: self._fetch_organization("/api/organizations")),
                ("api_v1", lambda: self._fetch_organization("/api/v1/organizations")),
            ])
            logger.info(f"[claude] Using organization {self._organization_id}")
        return self._organization_id

    async def _list(self, template: str) -> Tuple[List[Thread], Optional[Any]]:
        org = await self.organization_id()
        data = await self._request_json("GET", template.format(org=org))
        # the whole listing comes back at once
        return self._threads(data), None

    def list_endpoints(self, cursor: Any, limit: int):
        return [
            ("api", lambda: self._list("/api/organizations/{org}/chat_conversations")),
            ("api_v1", lambda: self._list("/api/v1/organizations/{org}/conversations")),
        ]

    async def _conversation(self, thread_id: str, template: str) -> ThreadDetail:
        org = await self.organization_id()
        data = await self._request_json(
            "GET",
            template.format(org=org, uuid=thread_id),
            params={"tree": "True", "rendering_mode": "messages"},
        )
        raw_messages = data.get("chat_messages") if isinstance(data, dict) else None
        if not isinstance(raw_messages, list):
            raise self._unrecognized("detail")

        messages = [
            Message(
                role=m.get("sender", ""),
                content=_message_text(m),
                created_at=to_epoch(m.get("created_at")),
            )
            for m in raw_messages if isinstance(m, dict)
        ]
        return self._detail_from_messages(thread_id, data, messages)

    def detail_endpoints(self, thread_id: str):
        return [
            ("api", lambda: self._conversation(thread_id, "/api/organizations/{org}/chat_conversations/{uuid}")),
            ("api_v1", lambda: self._conversation(thread_id, "/api/v1/organizations/{org}/conversations/{uuid}")),
        ]
