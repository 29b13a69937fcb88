"""Per-platform field strategy tables.

Each platform lists, per canonical field, the paths its payloads are known to
use. Entry-level tables are merged in front of the normalizer defaults; thread
tables describe listing items.
"""

from typing import Any, Dict, Optional

from shared.models import Thread
from shared.normalizer import FieldPath, FieldTable, extract_field, merge_fields, to_epoch, TITLE_MAX_LENGTH

ENTRY_FIELDS: Dict[str, FieldTable] = {
    "perplexity": {
        "query": [FieldPath("query_str", str)],
        "answer": [FieldPath("blocks[].markdown_block.answer", str)],
        "created_at": [FieldPath("updated_datetime")],
    },
    "chatgpt": {},
    "claude": {},
    "deepseek": {},
    "grok": {},
    "gemini": {},
}

THREAD_FIELDS: Dict[str, FieldTable] = {
    "perplexity": {
        "id": [FieldPath("uuid", str), FieldPath("slug", str), FieldPath("thread_url_slug", str)],
        "title": [FieldPath("title", str), FieldPath("query_str", str)],
        "time": [FieldPath("last_query_datetime"), FieldPath("updated_datetime"), FieldPath("created_at")],
    },
    "chatgpt": {
        "id": [FieldPath("id", str)],
        "title": [FieldPath("title", str)],
        "time": [FieldPath("update_time"), FieldPath("create_time")],
    },
    "claude": {
        "id": [FieldPath("uuid", str)],
        "title": [FieldPath("name", str), FieldPath("summary", str)],
        "time": [FieldPath("updated_at"), FieldPath("created_at")],
    },
    "deepseek": {
        "id": [FieldPath("id", str), FieldPath("chat_session_id", str), FieldPath("session_id", str)],
        "title": [FieldPath("title", str), FieldPath("name", str)],
        "time": [FieldPath("updated_at"), FieldPath("create_time"), FieldPath("inserted_at")],
    },
    "grok": {
        "id": [FieldPath("conversationId", str), FieldPath("id", str), FieldPath("uuid", str)],
        "title": [FieldPath("title", str), FieldPath("name", str)],
        "time": [FieldPath("modifyTime"), FieldPath("updatedAt"), FieldPath("createTime"), FieldPath("createdAt")],
    },
    "gemini": {
        # listing rows are positional: [id, title, timestamp, ...]
        "id": [FieldPath("0", str)],
        "title": [FieldPath("1", str), FieldPath("2", str)],
        "time": [FieldPath("2"), FieldPath("5.0")],
    },
}


def entry_fields(platform: str) -> FieldTable:
    """Normalizer table for a platform's entries."""
    return merge_fields(ENTRY_FIELDS.get(platform))


def build_thread(platform: str, raw: Any, url: Optional[str] = None) -> Optional[Thread]:
    """
    Build a Thread from a listing item.

    Returns:
        Thread, or None when the item carries no recognizable id
    """
    table = THREAD_FIELDS[platform]
    thread_id = extract_field(raw, table["id"])
    if not thread_id:
        return None
    title = extract_field(raw, table["title"]) or "Untitled"
    return Thread(
        id=str(thread_id),
        title=str(title).strip()[:TITLE_MAX_LENGTH],
        platform=platform,
        last_activity_time=to_epoch(extract_field(raw, table["time"])),
        url=url,
    )
