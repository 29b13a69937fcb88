"""Source adapter contract and the API -> DOM degradation chain shared by every platform."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

import httpx

from services.chat_extractor.dom import (
    DEFAULT_EXTRACTORS,
    DocumentProvider,
    StructuralExtractor,
    clean_title,
    extract_thread_links,
    run_extractors,
)
from services.chat_extractor.fields import build_thread, entry_fields
from services.chat_extractor.pagination import CursorCache
from services.chat_extractor.pairing import Message, pair_messages
from shared.clock import Clock
from shared.errors import (
    AuthError,
    DegradedExtraction,
    NotFound,
    RateLimited,
    SyncError,
    TransportError,
    error_from_status,
)
from shared.models import Collection, Entry, Thread, ThreadDetail, ThreadPage
from shared.normalizer import normalize_entries, normalize_title

logger = logging.getLogger(__name__)

MAX_ENDPOINT_VARIANTS = 3

# (variant name, zero-argument coroutine factory)
Variant = Tuple[str, Callable[[], Awaitable[Any]]]


class EndpointSet:
    """Remembers which endpoint variants failed so later calls try the others first."""

    def __init__(self):
        self.failed: Dict[str, int] = {}

    def ordered(self, names: Sequence[str]) -> List[str]:
        healthy = [n for n in names if n not in self.failed]
        demoted = [n for n in names if n in self.failed]
        return healthy + demoted

    def mark_failed(self, name: str) -> None:
        self.failed[name] = self.failed.get(name, 0) + 1

    def mark_ok(self, name: str) -> None:
        self.failed.pop(name, None)


class SourceAdapter(ABC):
    """
    Base class for chat platform adapters.

    Subclasses declare their identity patterns and endpoint variants; this
    class runs the degradation chain: primary endpoint, up to two alternates,
    then structural DOM extraction when the requested thread is the one open
    in the active document.
    """

    platform: str = ""
    base_url: str = ""
    id_patterns: Tuple[Pattern, ...] = ()
    page_size: int = 50
    pair_trailing_with_last = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        headers: Optional[Dict[str, str]] = None,
        clock: Optional[Clock] = None,
        document_provider: Optional[DocumentProvider] = None,
        cache_ttl: float = 60.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        extractors: Sequence[StructuralExtractor] = DEFAULT_EXTRACTORS
    ):
        """
        Args:
            client: Shared HTTP client; its timeout applies to every call
            headers: Per-platform auth headers (cookies, bearer token)
            clock: Time source for backoff and cache expiry
            document_provider: Returns the currently open rendered page, if any
            cache_ttl: Seconds listing pages stay fresh
            max_attempts: Attempts per endpoint variant for retryable errors
            base_delay: Backoff base delay in seconds
            extractors: Ranked structural extractors for DOM fallback
        """
        self.client = client
        self.headers = dict(headers or {})
        self.clock = clock or Clock()
        self.document_provider = document_provider
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.extractors = tuple(extractors)
        self.fields = entry_fields(self.platform)
        self.endpoints: Dict[str, EndpointSet] = {}
        self.cursor_cache = CursorCache(
            self._fetch_page,
            page_size=self.page_size,
            ttl=cache_ttl,
            clock=self.clock,
        )

    # Identity

    def identify(self, locator: Optional[str]) -> Optional[str]:
        """Extract the thread id from a url or locator; None if unrecognized."""
        if not locator:
            return None
        for pattern in self.id_patterns:
            match = pattern.search(locator)
            if match:
                return match.group(1)
        return None

    def thread_url(self, thread_id: str) -> Optional[str]:
        return None

    # HTTP helpers

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            response = await self.client.request(method, self._url(path), headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout calling {path}", platform=self.platform) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error calling {path}: {e}", platform=self.platform) from e

        if response.status_code >= 400:
            retry_after = None
            if response.status_code == 429:
                try:
                    retry_after = float(response.headers.get("Retry-After", ""))
                except ValueError:
                    retry_after = None
            raise error_from_status(
                response.status_code,
                f"{method} {path} failed with HTTP {response.status_code}",
                platform=self.platform,
                retry_after=retry_after,
            )
        return response

    async def _request_json(self, method: str, path: str, **kwargs) -> Any:
        response = await self._send(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise NotFound(f"Unrecognized response from {path}: not JSON", platform=self.platform) from e

    def _unrecognized(self, what: str) -> NotFound:
        return NotFound(f"Unrecognized {what} response shape", platform=self.platform)

    # Degradation chain

    async def _try_endpoints(self, key: str, variants: Sequence[Variant]) -> Any:
        """
        Run endpoint variants in health order until one succeeds.

        Retryable errors are retried on the same variant with exponential
        backoff. NotFound and ValidationError (bad shape) move to the next
        variant. AuthError aborts the chain.

        Raises:
            AuthError: Immediately on 401/403
            SyncError: The last error once every variant failed
        """
        health = self.endpoints.setdefault(key, EndpointSet())
        by_name = dict(variants)
        order = health.ordered([name for name, _ in variants])[:MAX_ENDPOINT_VARIANTS]
        last_error: Optional[SyncError] = None

        for name in order:
            for attempt in range(self.max_attempts):
                try:
                    result = await by_name[name]()
                    health.mark_ok(name)
                    return result

                except AuthError:
                    logger.warning(f"[{self.platform}] {key} endpoint {name} rejected credentials")
                    raise

                except SyncError as e:
                    last_error = e
                    if not e.retryable:
                        logger.info(f"[{self.platform}] {key} endpoint {name} failed ({e.code}), trying next variant")
                        break

                    if attempt + 1 < self.max_attempts:
                        delay = self.base_delay * (2 ** attempt)
                        if isinstance(e, RateLimited) and e.retry_after:
                            delay = max(delay, e.retry_after)
                        logger.warning(
                            f"[{self.platform}] {key} endpoint {name} attempt {attempt + 1}/{self.max_attempts} "
                            f"failed: {e}. Retrying in {delay:.2f} seconds..."
                        )
                        await self.clock.sleep(delay)

            health.mark_failed(name)

        raise last_error or NotFound(f"No {key} endpoint available", platform=self.platform)

    # Listing

    @abstractmethod
    def list_endpoints(self, cursor: Any, limit: int) -> Sequence[Variant]:
        """Variants returning (threads, next_cursor)."""

    async def _fetch_page(self, cursor: Any, limit: int) -> Tuple[List[Thread], Optional[Any]]:
        return await self._try_endpoints("list", self.list_endpoints(cursor, limit))

    async def list_items(self, offset: int = 0, limit: int = 20) -> ThreadPage:
        """
        List threads newest first.

        Falls back to thread links on the active document, then to the active
        thread itself, when every listing endpoint fails.
        """
        try:
            return await self.cursor_cache.resolve(offset, limit)
        except AuthError:
            raise
        except SyncError as e:
            threads = self._threads_from_document()
            if not threads:
                raise
            logger.warning(f"[{self.platform}] Listing API failed ({e}), using {len(threads)} threads from page")
            window = threads[offset:offset + limit]
            return ThreadPage(items=window, has_more=False, offset=offset, total=len(threads))

    async def list_all(self, progress=None) -> List[Thread]:
        return await self.cursor_cache.list_all(progress)

    def _threads_from_document(self) -> List[Thread]:
        document = self.document_provider() if self.document_provider else None
        if document is None:
            return []

        links = extract_thread_links(document, self.id_patterns)
        if links:
            return [
                Thread(id=thread_id, title=title, platform=self.platform, url=self.thread_url(thread_id))
                for thread_id, title in links
            ]

        current = self.identify(document.url)
        if current:
            return [Thread(
                id=current,
                title=clean_title(document.title) or "Untitled",
                platform=self.platform,
                url=self.thread_url(current),
            )]
        return []

    async def list_collections(self) -> List[Collection]:
        """Platforms without collections return an empty list."""
        return []

    # Detail

    @abstractmethod
    def detail_endpoints(self, thread_id: str) -> Sequence[Variant]:
        """Variants returning a ThreadDetail."""

    async def fetch_detail(self, thread_id: str) -> ThreadDetail:
        """
        Fetch a thread's entries.

        Never raises for missing data: returns a DOM-degraded result when the
        thread is open in the active document, else an empty result with an
        error reason. AuthError propagates so the caller can ask the user to
        re-authenticate.
        """
        try:
            return await self._try_endpoints("detail", self.detail_endpoints(thread_id))
        except AuthError:
            raise
        except SyncError as e:
            reason = str(e)
            logger.warning(f"[{self.platform}] All detail endpoints failed for {thread_id}: {reason}")

        degraded = self._detail_from_document(thread_id, reason)
        if degraded is not None:
            return degraded

        return ThreadDetail(
            thread=Thread(id=thread_id, title="Untitled", platform=self.platform, url=self.thread_url(thread_id)),
            entries=[],
            error=reason,
        )

    def _detail_from_document(self, thread_id: str, reason: str) -> Optional[ThreadDetail]:
        document = self.document_provider() if self.document_provider else None
        if document is None or self.identify(document.url) != thread_id:
            return None

        entries, extractor = run_extractors(document, self.extractors)
        if not entries:
            logger.info(f"[{self.platform}] DOM extraction found nothing for {thread_id}")
            return None

        title = clean_title(document.title) or normalize_title({}, entries)
        return ThreadDetail(
            thread=Thread(id=thread_id, title=title[:100], platform=self.platform, url=self.thread_url(thread_id)),
            entries=entries,
            degraded=DegradedExtraction(extractor, reason),
        )

    # Helpers for subclasses

    def _thread(self, raw: Any) -> Optional[Thread]:
        thread = build_thread(self.platform, raw)
        if thread is not None:
            thread.url = self.thread_url(thread.id)
        return thread

    def _threads(self, raw_items: Any) -> List[Thread]:
        if not isinstance(raw_items, list):
            raise self._unrecognized("listing")
        return [t for t in (self._thread(raw) for raw in raw_items) if t is not None]

    def _build_detail(self, thread_id: str, raw: Any, entries: List[Entry]) -> ThreadDetail:
        title = normalize_title(raw, entries, self.fields)
        return ThreadDetail(
            thread=Thread(id=thread_id, title=title, platform=self.platform, url=self.thread_url(thread_id)),
            entries=entries,
        )

    def _detail_from_entries(self, thread_id: str, raw: Any) -> ThreadDetail:
        """Detail for payloads already shaped as query/answer entries."""
        entries = normalize_entries(raw, self.fields)
        if not entries:
            raise self._unrecognized("detail")
        return self._build_detail(thread_id, raw, entries)

    def _detail_from_messages(self, thread_id: str, raw: Any, messages: List[Message]) -> ThreadDetail:
        """Detail for payloads shaped as role-tagged messages."""
        entries = pair_messages(messages, self.pair_trailing_with_last)
        if not entries:
            raise self._unrecognized("detail")
        return self._build_detail(thread_id, raw, entries)

    async def ping(self) -> Dict[str, Any]:
        """Report endpoint health without touching the network."""
        return {
            "platform": self.platform,
            "failed_endpoints": {
                key: dict(health.failed) for key, health in self.endpoints.items() if health.failed
            },
        }
