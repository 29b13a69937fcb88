"""Pair role-tagged chat messages into query/answer entries."""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from shared.models import Entry

USER_ROLES = {"user", "human"}
ASSISTANT_ROLES = {"assistant", "bot", "ai", "model", "grok", "deepseek", "claude", "gemini", "chatgpt"}


@dataclass
class Message:
    """A single role-tagged message as platforms return them."""
    role: str
    content: str
    created_at: Optional[float] = None


def role_kind(role: Optional[str]) -> Optional[str]:
    """Collapse platform role names into ``user`` / ``assistant``."""
    role = (role or "").strip().lower()
    if role in USER_ROLES:
        return "user"
    if role in ASSISTANT_ROLES:
        return "assistant"
    return None


def pair_messages(messages: Iterable[Message], pair_trailing_with_last: bool = False) -> List[Entry]:
    """
    Scan messages in order and emit an Entry per user/assistant exchange.

    A user message replaces the pending query. An assistant message with a
    non-empty pending query emits an Entry and clears it; assistant messages
    with no pending query are dropped. A trailing unpaired query is dropped
    unless ``pair_trailing_with_last`` is set, in which case it is paired with
    the last message's content when that content differs from the query.

    Args:
        messages: Role-tagged messages in conversation order
        pair_trailing_with_last: Keep a trailing query paired with the last content

    Returns:
        Entries in source order
    """
    messages = [m for m in messages if m.content and m.content.strip()]
    entries: List[Entry] = []
    pending: Optional[Message] = None

    for message in messages:
        kind = role_kind(message.role)
        if kind == "user":
            pending = message
        elif kind == "assistant" and pending is not None:
            entries.append(Entry(
                query=pending.content.strip(),
                answer=message.content.strip(),
                created_at=pending.created_at or message.created_at,
            ))
            pending = None

    if pending is not None and pair_trailing_with_last and messages:
        last = messages[-1].content.strip()
        if last != pending.content.strip():
            entries.append(Entry(query=pending.content.strip(), answer=last, created_at=pending.created_at))

    return entries
