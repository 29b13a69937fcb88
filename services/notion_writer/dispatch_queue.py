"""Rate-limited FIFO queue for Notion API calls."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional

from shared.clock import Clock
from shared.errors import QueueTimeout
from shared.retry import BackoffPolicy

logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[Any]]

WINDOW_BUFFER = 0.1
BUSY_QUEUE_SIZE = 50
BUSY_PACING = 0.2
IDLE_PACING = 0.5


@dataclass
class PendingDispatch:
    """A queued call waiting for its turn."""
    task: Task
    enqueued_at: float
    future: asyncio.Future


class DispatchQueue:
    """
    Serializes calls to the write API under a sliding-window budget.

    One drain loop runs the queued tasks in FIFO order. Before each task it
    drops entries that waited longer than ``stale_after`` seconds, and if the
    window budget is used up it sleeps until the oldest call leaves the window.
    After each call it pauses briefly, less when the backlog is large.
    """

    def __init__(
        self,
        requests_per_window: int = 30,
        window: float = 60.0,
        stale_after: float = 300.0,
        clock: Optional[Clock] = None,
        retry_policy: Optional[BackoffPolicy] = None
    ):
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be at least 1")
        self.requests_per_window = requests_per_window
        self.window = window
        self.stale_after = stale_after
        self.clock = clock or Clock()
        self.retry_policy = retry_policy or BackoffPolicy(clock=self.clock)

        self._pending: Deque[PendingDispatch] = deque()
        self._timestamps: List[float] = []
        self._drainer: Optional[asyncio.Task] = None
        self.dispatched = 0
        self.expired = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def dispatch_times(self) -> List[float]:
        """Start times of the calls still inside the window."""
        return list(self._timestamps)

    def enqueue(self, task: Task) -> asyncio.Future:
        """
        Queue a task and return a future resolved with its result.

        Args:
            task: Zero-argument coroutine function performing one API call

        Returns:
            Future that completes with the task's result or exception
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending.append(PendingDispatch(task, self.clock.now(), future))

        if self._drainer is None or self._drainer.done():
            self._drainer = loop.create_task(self._drain())
        return future

    async def submit(self, task: Task) -> Any:
        """
        Dispatch a task with retries; every attempt goes back through the queue.

        AuthError, ValidationError, NotFound and QueueTimeout fail immediately;
        RateLimited and TransportError are retried by the retry policy.
        """
        async def attempt():
            return await self.enqueue(task)

        attempt.__name__ = getattr(task, "__name__", "dispatch")
        return await self.retry_policy.run(attempt)

    async def close(self) -> None:
        """Stop the drain loop and fail whatever is still queued."""
        if self._drainer and not self._drainer.done():
            self._drainer.cancel()
            try:
                await self._drainer
            except asyncio.CancelledError:
                pass
        while self._pending:
            item = self._pending.popleft()
            if not item.future.done():
                item.future.set_exception(QueueTimeout("Dispatch queue closed"))

    def _prune(self, now: float) -> None:
        self._timestamps = [t for t in self._timestamps if now - t < self.window]

    async def _drain(self) -> None:
        while self._pending:
            now = self.clock.now()
            head = self._pending[0]

            if now - head.enqueued_at > self.stale_after:
                self._pending.popleft()
                self.expired += 1
                logger.warning(f"Dropping dispatch queued {now - head.enqueued_at:.1f}s ago")
                if not head.future.done():
                    head.future.set_exception(QueueTimeout())
                continue

            self._prune(now)
            if len(self._timestamps) >= self.requests_per_window:
                wait = self.window - (now - min(self._timestamps)) + WINDOW_BUFFER
                logger.info(f"Write budget exhausted, waiting {wait:.1f}s ({len(self._pending)} queued)")
                await self.clock.sleep(wait)
                continue

            item = self._pending.popleft()
            if item.future.cancelled():
                continue

            self._timestamps.append(self.clock.now())
            self.dispatched += 1
            try:
                result = await item.task()
            except asyncio.CancelledError:
                item.future.cancel()
                raise
            except Exception as e:
                if not item.future.done():
                    item.future.set_exception(e)
            else:
                if not item.future.done():
                    item.future.set_result(result)

            await self.clock.sleep(BUSY_PACING if len(self._pending) > BUSY_QUEUE_SIZE else IDLE_PACING)
