"""Build Notion block payloads from thread content."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared.models import Entry, Source, ThreadDetail

logger = logging.getLogger(__name__)

CHILDREN_LIMIT = 100
RICH_TEXT_LIMIT = 2000
PARAGRAPH_CHUNK_SIZE = 1900
MAX_SOURCE_LINKS = 10


def split_text_into_chunks(text: str, max_length: int = PARAGRAPH_CHUNK_SIZE) -> List[str]:
    """
    Split text into pieces no longer than ``max_length``.

    Each cut prefers a newline, then a sentence end, then a space, as long as
    the break point is past the middle of the window; otherwise the text is cut
    hard at ``max_length``.
    """
    if not text:
        return []

    chunks = []
    remaining = text
    while len(remaining) > max_length:
        window = remaining[:max_length]
        cut = -1
        for separator in ("\n", ". ", " "):
            position = window.rfind(separator)
            if position > max_length // 2:
                cut = position + len(separator)
                break
        if cut <= 0:
            cut = max_length

        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()

    if remaining:
        chunks.append(remaining)
    return chunks


def _rich_text(content: str, link: Optional[str] = None) -> List[Dict[str, Any]]:
    text: Dict[str, Any] = {"content": content[:RICH_TEXT_LIMIT]}
    if link:
        text["link"] = {"url": link}
    return [{"type": "text", "text": text}]


def _block(block_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
    return {"object": "block", "type": block_type, block_type: body}


def header_block(synced_at: float) -> Dict[str, Any]:
    stamp = datetime.fromtimestamp(synced_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    return _block("callout", {
        "rich_text": _rich_text(f"Auto-synced on {stamp}"),
        "icon": {"type": "emoji", "emoji": "\U0001F916"},
        "color": "blue_background",
    })


def source_blocks(sources: List[Source]) -> List[Dict[str, Any]]:
    """Bulleted links, deduplicated by url and capped."""
    seen = set()
    blocks = []
    for source in sources:
        if not source.url or source.url in seen:
            continue
        seen.add(source.url)
        blocks.append(_block("bulleted_list_item", {
            "rich_text": _rich_text(source.title or source.url, link=source.url),
        }))
        if len(blocks) >= MAX_SOURCE_LINKS:
            break
    return blocks


def entry_blocks(entry: Entry) -> List[Dict[str, Any]]:
    """Heading for the query, paragraphs for the answer, then sources."""
    blocks = [_block("heading_2", {"rich_text": _rich_text(entry.query or "(no query)")})]

    for chunk in split_text_into_chunks(entry.answer):
        blocks.append(_block("paragraph", {"rich_text": _rich_text(chunk)}))

    links = source_blocks(entry.sources)
    if links:
        blocks.append(_block("paragraph", {"rich_text": _rich_text("Sources")}))
        blocks.extend(links)

    blocks.append(_block("divider", {}))
    return blocks


def build_thread_blocks(detail: ThreadDetail, synced_at: float) -> List[Dict[str, Any]]:
    """
    Build every child block for an exported thread.

    Args:
        detail: Thread content with its entries
        synced_at: Epoch seconds shown in the header callout

    Returns:
        Flat list of Notion block objects (may exceed the children limit)
    """
    blocks = [header_block(synced_at)]
    for entry in detail.entries:
        blocks.extend(entry_blocks(entry))

    logger.debug(f"Built {len(blocks)} blocks for {detail.thread.key}")
    return blocks


def chunk_blocks(blocks: List[Dict[str, Any]], size: int = CHILDREN_LIMIT) -> List[List[Dict[str, Any]]]:
    """Split blocks into request-sized groups."""
    if size < 1:
        raise ValueError("size must be at least 1")
    return [blocks[i:i + size] for i in range(0, len(blocks), size)]
