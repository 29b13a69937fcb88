"""Structural extraction of conversations from a rendered page.

Used only as the last step of the degradation chain, when every API endpoint
failed and the requested thread is the one currently open.
"""

import logging
import re
from typing import Callable, Iterable, List, Optional, Pattern, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from services.chat_extractor.pairing import Message, pair_messages
from shared.models import Entry

logger = logging.getLogger(__name__)

MIN_BLOCK_TEXT = 5
MIN_LEAF_TEXT = 30

TITLE_SUFFIX = re.compile(
    r"\s*[-|–—]\s*(ChatGPT|Claude|Perplexity|DeepSeek|Grok|Gemini|Google Gemini)\s*$",
    re.IGNORECASE,
)


class RenderedDocument:
    """HTML of a rendered page plus its url, parsed lazily with BeautifulSoup."""

    def __init__(self, url: str, html: str, title: Optional[str] = None):
        self.url = url
        self.html = html
        self._title = title
        self._soup = None

    @property
    def soup(self) -> BeautifulSoup:
        if self._soup is None:
            self._soup = BeautifulSoup(self.html, "html.parser")
        return self._soup

    @property
    def title(self) -> str:
        if self._title:
            return self._title
        tag = self.soup.find("title")
        return tag.get_text(strip=True) if tag else ""


DocumentProvider = Callable[[], Optional[RenderedDocument]]


class ActiveDocumentSlot:
    """Holds the currently open rendered page. Callable as a DocumentProvider."""

    def __init__(self):
        self._document: Optional[RenderedDocument] = None

    def set(self, document: RenderedDocument) -> None:
        self._document = document

    def clear(self) -> None:
        self._document = None

    def __call__(self) -> Optional[RenderedDocument]:
        return self._document


def clean_title(title: Optional[str]) -> str:
    """Strip platform suffixes such as " - DeepSeek" or " | Grok"."""
    return TITLE_SUFFIX.sub("", title or "").strip()


def _text(element) -> str:
    return element.get_text("\n", strip=True)


def _outermost(elements: Iterable) -> List:
    """Drop matches nested inside another match, keeping document order."""
    kept = []
    ids = set()
    for element in elements:
        if any(id(parent) in ids for parent in element.parents):
            continue
        ids.add(id(element))
        kept.append(element)
    return kept


class StructuralExtractor:
    """Base class for ranked DOM extractors."""

    name = "structural"

    def extract(self, document: RenderedDocument) -> List[Entry]:
        raise NotImplementedError


class RoleAttributeExtractor(StructuralExtractor):
    """Messages tagged with an explicit author role attribute."""

    name = "role_attribute"
    attributes = ("data-message-author-role", "data-role", "data-message-role")

    def extract(self, document: RenderedDocument) -> List[Entry]:
        selector = ", ".join(f"[{attr}]" for attr in self.attributes)
        messages = []
        for element in _outermost(document.soup.select(selector)):
            role = next((element.get(attr) for attr in self.attributes if element.get(attr)), "")
            messages.append(Message(role=role, content=_text(element)))
        return pair_messages(messages)


class ClassNameExtractor(StructuralExtractor):
    """Messages recognised by conventional class names or custom element names."""

    name = "class_name"
    user_markers = ("user-message", "human-message", "user-query", "query-text")
    assistant_markers = ("assistant-message", "ai-message", "bot-message", "model-response", "response-content")

    def _role(self, element) -> Optional[str]:
        haystack = " ".join(element.get("class", [])) + " " + element.name
        if any(marker in haystack for marker in self.user_markers):
            return "user"
        if any(marker in haystack for marker in self.assistant_markers):
            return "assistant"
        return None

    def extract(self, document: RenderedDocument) -> List[Entry]:
        markers = self.user_markers + self.assistant_markers
        selector = ", ".join([f"[class*='{m}']" for m in markers] + ["user-query", "model-response"])
        messages = []
        for element in _outermost(document.soup.select(selector)):
            role = self._role(element)
            if role:
                messages.append(Message(role=role, content=_text(element)))
        return pair_messages(messages)


class AlternatingBlockExtractor(StructuralExtractor):
    """Last resort: treat content blocks as alternating user/assistant turns."""

    name = "alternating_blocks"
    selectors = ("article", "[data-testid*='conversation-turn']", "[class*='markdown']", ".prose")

    def _blocks(self, document: RenderedDocument) -> List[str]:
        soup = document.soup
        for selector in self.selectors:
            texts = [_text(el) for el in _outermost(soup.select(selector))]
            texts = [t for t in texts if len(t) > MIN_BLOCK_TEXT]
            if len(texts) >= 2:
                return texts

        main = soup.find("main") or soup.body or soup
        leaves = [div for div in main.find_all("div") if div.find("div") is None]
        return [t for t in (_text(div) for div in leaves) if len(t) > MIN_LEAF_TEXT]

    def extract(self, document: RenderedDocument) -> List[Entry]:
        blocks = self._blocks(document)
        messages = [
            Message(role="user" if index % 2 == 0 else "assistant", content=text)
            for index, text in enumerate(blocks)
        ]
        return pair_messages(messages)


DEFAULT_EXTRACTORS: Tuple[StructuralExtractor, ...] = (
    RoleAttributeExtractor(),
    ClassNameExtractor(),
    AlternatingBlockExtractor(),
)


def run_extractors(
    document: RenderedDocument,
    extractors: Iterable[StructuralExtractor] = DEFAULT_EXTRACTORS
) -> Tuple[List[Entry], Optional[str]]:
    """
    Run extractors in rank order; each runs only if the previous ones found nothing.

    Returns:
        (entries, name of the extractor that produced them or None)
    """
    for extractor in extractors:
        entries = extractor.extract(document)
        if entries:
            logger.info(f"DOM extractor {extractor.name} produced {len(entries)} entries from {document.url}")
            return entries, extractor.name
    return [], None


def extract_thread_links(
    document: RenderedDocument,
    patterns: Iterable[Pattern]
) -> List[Tuple[str, str]]:
    """
    Find links to threads on the page, e.g. a sidebar listing.

    Args:
        document: Rendered page
        patterns: Compiled regexes whose first group is the thread id

    Returns:
        (thread_id, title) pairs, deduplicated, in document order
    """
    patterns = list(patterns)
    found = []
    seen = set()
    for anchor in document.soup.select("a[href]"):
        href = urljoin(document.url, anchor["href"])
        for pattern in patterns:
            match = pattern.search(href)
            if match:
                thread_id = match.group(1)
                if thread_id not in seen:
                    seen.add(thread_id)
                    found.append((thread_id, clean_title(_text(anchor)) or "Untitled"))
                break
    return found
