"""Registry of source adapters keyed by platform."""

import logging
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import httpx

from services.chat_extractor.base import SourceAdapter
from services.chat_extractor.dom import DocumentProvider
from services.chat_extractor.platforms.chatgpt import ChatGPTAdapter
from services.chat_extractor.platforms.claude import ClaudeAdapter
from services.chat_extractor.platforms.deepseek import DeepSeekAdapter
from services.chat_extractor.platforms.gemini import GeminiAdapter
from services.chat_extractor.platforms.grok import GrokAdapter
from services.chat_extractor.platforms.perplexity import PerplexityAdapter
from shared.clock import Clock
from shared.config import get_source_headers

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = {
    cls.platform: cls
    for cls in (PerplexityAdapter, ChatGPTAdapter, ClaudeAdapter, DeepSeekAdapter, GrokAdapter, GeminiAdapter)
}


class AdapterRegistry:
    """Holds one adapter per platform."""

    def __init__(self, adapters: Iterable[SourceAdapter] = (), clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._adapters: Dict[str, SourceAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: SourceAdapter) -> None:
        self._adapters[adapter.platform] = adapter

    def get(self, platform: str) -> Optional[SourceAdapter]:
        return self._adapters.get(platform)

    def platforms(self) -> List[str]:
        return list(self._adapters)

    def __iter__(self) -> Iterator[SourceAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)

    def identify(self, locator: Optional[str]) -> Optional[Tuple[str, str]]:
        """Return (platform, thread_id) for the first adapter that recognizes the locator."""
        for adapter in self._adapters.values():
            thread_id = adapter.identify(locator)
            if thread_id:
                return adapter.platform, thread_id
        return None

    async def ping(self) -> dict:
        """Health report for every adapter."""
        reports = [await adapter.ping() for adapter in self._adapters.values()]
        return {
            "healthy": True,
            "timestamp": self.clock.now(),
            "platforms": self.platforms(),
            "failed_endpoints": {r["platform"]: r["failed_endpoints"] for r in reports if r["failed_endpoints"]},
        }


def build_default_registry(
    client: httpx.AsyncClient,
    clock: Optional[Clock] = None,
    document_provider: Optional[DocumentProvider] = None,
    platforms: Optional[Iterable[str]] = None,
    headers_for: Callable[[str], Dict[str, str]] = get_source_headers
) -> AdapterRegistry:
    """
    Build a registry with every known platform, or the subset named.

    Args:
        client: Shared HTTP client
        clock: Time source shared by the adapters
        document_provider: Active rendered page provider for DOM fallback
        platforms: Platform names to enable; all when empty
        headers_for: Returns auth headers for a platform

    Raises:
        ValueError: If an unknown platform is named
    """
    names = list(platforms or ADAPTER_CLASSES)
    unknown = [n for n in names if n not in ADAPTER_CLASSES]
    if unknown:
        raise ValueError(f"Unknown platforms: {', '.join(unknown)}")

    clock = clock or Clock()
    registry = AdapterRegistry(clock=clock)
    for name in names:
        registry.register(ADAPTER_CLASSES[name](
            client,
            headers=headers_for(name),
            clock=clock,
            document_provider=document_provider,
        ))
    logger.info(f"Registered source adapters: {', '.join(names)}")
    return registry
