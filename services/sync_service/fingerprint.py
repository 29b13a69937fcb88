"""Content fingerprints used to skip re-exporting unchanged threads."""

import logging
from typing import Optional

from shared.models import ThreadDetail

logger = logging.getLogger(__name__)

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def simple_hash(text: str) -> str:
    """32-bit rolling hash (h * 31 + c, signed wraparound) rendered in base 36."""
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _to_base36(value)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    value = abs(value)
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_DIGITS[remainder])
    return sign + "".join(reversed(digits))


def generate_fingerprint(detail: ThreadDetail) -> str:
    """Fingerprint over id, title, entry count and the first and last queries."""
    entries = detail.entries
    content = "|".join([
        detail.thread.id,
        detail.thread.title or "",
        str(len(entries)),
        entries[0].query if entries else "",
        entries[-1].query if entries else "",
    ])
    return simple_hash(content)


class DuplicateDetector:
    """Compares thread fingerprints with the ones stored at last export."""

    def __init__(self, state):
        """
        Args:
            state: SyncStateStore holding the stored fingerprints
        """
        self.state = state

    def has_changed(self, detail: ThreadDetail, fingerprint: Optional[str] = None) -> bool:
        fingerprint = fingerprint or generate_fingerprint(detail)
        previous = self.state.get_fingerprint(detail.thread.platform, detail.thread.id)
        return previous is None or previous != fingerprint

    def should_skip(self, detail: ThreadDetail, force: bool = False) -> bool:
        """True when the thread is unchanged since its last export and not forced."""
        if force:
            return False
        unchanged = not self.has_changed(detail)
        if unchanged:
            logger.debug(f"Skipping unchanged thread {detail.thread.key}")
        return unchanged

    def remember(self, detail: ThreadDetail) -> str:
        fingerprint = generate_fingerprint(detail)
        self.state.save_fingerprint(detail.thread.platform, detail.thread.id, fingerprint)
        return fingerprint
