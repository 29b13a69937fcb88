"""Normalize heterogeneous per-platform records into canonical Entry/Thread data.

Field lookups are data-driven: every canonical field maps to an ordered list of
named strategies ``raw -> value | None`` and the first non-empty value wins.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from shared.models import Entry, Source

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 100

Strategy = Callable[[Any], Any]
FieldTable = Dict[str, List[Strategy]]


def get_path(data: Any, expr: str) -> Any:
    """
    Resolve a dotted path against nested dicts and lists.

    A segment ending in ``[]`` walks every element of the list found under that
    key and returns the first non-empty result of the remaining path, so
    ``blocks[].markdown_block.answer`` finds the first block carrying an answer.

    Args:
        data: Nested dict/list structure
        expr: Dotted path, e.g. ``detail.entries`` or ``blocks[].text``

    Returns:
        The value found or None
    """
    if not expr:
        return data

    head, _, rest = expr.partition(".")
    if head.endswith("[]"):
        key = head[:-2]
        items = data.get(key) if (key and isinstance(data, dict)) else (data if not key else None)
        if not isinstance(items, list):
            return None
        for item in items:
            value = get_path(item, rest)
            if not _is_empty(value):
                return value
        return None

    if isinstance(data, dict):
        return get_path(data.get(head), rest) if head in data else None
    if isinstance(data, list) and head.isdigit():
        index = int(head)
        return get_path(data[index], rest) if index < len(data) else None
    return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


class FieldPath:
    """Strategy reading a dotted path, optionally requiring a given type."""

    def __init__(self, expr: str, expected: Optional[type] = None):
        self.expr = expr
        self.expected = expected

    def __call__(self, raw: Any) -> Any:
        value = get_path(raw, self.expr)
        if self.expected is not None and not isinstance(value, self.expected):
            return None
        return value

    def __repr__(self) -> str:
        return f"FieldPath({self.expr!r})"


def extract_field(raw: Any, strategies: Iterable[Strategy]) -> Any:
    """Run strategies in order and return the first non-empty value."""
    for strategy in strategies:
        try:
            value = strategy(raw)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.debug(f"Field strategy {strategy!r} failed: {e}")
            continue
        if not _is_empty(value):
            return value
    return None


def _markdown_chunks(raw: Any) -> Optional[str]:
    chunks = get_path(raw, "blocks[].markdown_block.chunks")
    if isinstance(chunks, list):
        return "".join(str(chunk) for chunk in chunks)
    return None


def _block_sources(raw: Any) -> Optional[list]:
    return get_path(raw, "blocks[].web_result_block.web_results")


DEFAULT_FIELDS: FieldTable = {
    "query": [
        FieldPath("query_str", str),
        FieldPath("query", str),
        FieldPath("question", str),
        FieldPath("prompt", str),
    ],
    "answer": [
        FieldPath("blocks[].markdown_block.answer", str),
        _markdown_chunks,
        FieldPath("blocks[].text_block.content", str),
        FieldPath("answer", str),
        FieldPath("response.text", str),
        FieldPath("response", str),
        FieldPath("text", str),
        FieldPath("content", str),
    ],
    "created_at": [
        FieldPath("created_at"),
        FieldPath("updated_datetime"),
        FieldPath("create_time"),
        FieldPath("timestamp"),
    ],
    "sources": [
        _block_sources,
        FieldPath("sources", list),
        FieldPath("citations", list),
        FieldPath("web_results", list),
    ],
    "title": [
        FieldPath("title", str),
        FieldPath("name", str),
        FieldPath("thread_title", str),
    ],
}


def merge_fields(overrides: Optional[FieldTable]) -> FieldTable:
    """Prepend platform strategies to the default table, field by field."""
    table = {name: list(strategies) for name, strategies in DEFAULT_FIELDS.items()}
    for name, strategies in (overrides or {}).items():
        table[name] = list(strategies) + table.get(name, [])
    return table


def to_epoch(value: Any) -> Optional[float]:
    """
    Convert a timestamp of unknown shape to epoch seconds.

    Accepts epoch seconds, epoch milliseconds, numeric strings and ISO-8601
    strings (with or without a trailing ``Z``). Returns None when unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        number = float(value)
        return number / 1000.0 if number > 1e12 else number
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return to_epoch(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable timestamp: {text!r}")
            return None
        return to_epoch(parsed)
    return None


def locate_entries(detail: Any) -> List[Any]:
    """Find the raw entry list in the shapes platforms are known to return."""
    if isinstance(detail, list):
        return detail
    if not isinstance(detail, dict):
        return []
    for expr in ("entries", "detail.entries", "messages"):
        value = get_path(detail, expr)
        if isinstance(value, list):
            return value
    return []


def normalize_sources(raw_sources: Any) -> List[Source]:
    """Convert citation lists to Source objects, deduplicated by url."""
    sources: List[Source] = []
    seen = set()
    if not isinstance(raw_sources, list):
        return sources
    for item in raw_sources:
        if isinstance(item, str):
            url, title = item, item
        elif isinstance(item, dict):
            url = item.get("url") or item.get("link") or ""
            title = item.get("name") or item.get("title") or url
        else:
            continue
        if not url or url in seen:
            continue
        seen.add(url)
        sources.append(Source(title=str(title), url=str(url)))
    return sources


def normalize_entry(raw: Any, fields: Optional[FieldTable] = None) -> Optional[Entry]:
    """Normalize one raw entry; returns None when both query and answer are empty."""
    if isinstance(raw, Entry):
        entry = raw
    elif isinstance(raw, dict):
        table = fields or DEFAULT_FIELDS
        query = extract_field(raw, table["query"]) or ""
        answer = extract_field(raw, table["answer"]) or ""
        entry = Entry(
            query=str(query).strip(),
            answer=str(answer).strip(),
            created_at=to_epoch(extract_field(raw, table["created_at"])),
            sources=normalize_sources(extract_field(raw, table["sources"])),
        )
    else:
        return None

    if not entry.query and not entry.answer:
        return None
    return entry


def normalize_entries(detail: Any, fields: Optional[FieldTable] = None) -> List[Entry]:
    """
    Normalize a raw detail payload into canonical entries.

    Args:
        detail: Raw payload (dict with entries/detail.entries/messages or a list)
        fields: Field strategy table, defaults to DEFAULT_FIELDS

    Returns:
        Entries in source order, empty query+answer pairs dropped
    """
    entries = []
    for raw in locate_entries(detail):
        entry = normalize_entry(raw, fields)
        if entry is not None:
            entries.append(entry)
    return entries


def normalize_title(
    raw: Any,
    entries: Optional[List[Entry]] = None,
    fields: Optional[FieldTable] = None,
    default: str = "Untitled"
) -> str:
    """Title from aliases, falling back to the first query, truncated to 100 characters."""
    table = fields or DEFAULT_FIELDS
    title = extract_field(raw, table["title"]) if isinstance(raw, dict) else None
    if _is_empty(title) and entries:
        title = next((e.query for e in entries if e.query), None)
    title = str(title).strip() if title else default
    return title[:TITLE_MAX_LENGTH]
