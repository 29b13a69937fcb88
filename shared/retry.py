"""Retry logic with exponential backoff for network operations."""

import logging
from typing import Any, Awaitable, Callable, Optional

from shared.clock import Clock
from shared.errors import RateLimited, SyncError

logger = logging.getLogger(__name__)


class BackoffPolicy:
    """
    Retry an async callable with capped exponential backoff.

    Only errors from the sync taxonomy marked ``retryable`` are retried; anything
    else (AuthError, ValidationError, NotFound, QueueTimeout, foreign exceptions)
    propagates on the first occurrence.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 2.0,
        exponential_base: float = 2.0,
        max_delay: float = 60.0,
        clock: Optional[Clock] = None
    ):
        """
        Args:
            max_attempts: Total number of attempts, including the first one
            initial_delay: Delay in seconds before the second attempt
            exponential_base: Base for exponential backoff calculation
            max_delay: Upper bound for a single delay
            clock: Time source used for sleeping
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.exponential_base = exponential_base
        self.max_delay = max_delay
        self.clock = clock or Clock()

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)

    async def run(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Call ``func`` until it succeeds, fails permanently or attempts run out."""
        name = getattr(func, "__name__", repr(func))

        for attempt in range(self.max_attempts):
            try:
                return await func(*args, **kwargs)

            except SyncError as e:
                if not e.retryable:
                    logger.debug(f"{name} failed with non-retryable {e.code}: {e}")
                    raise

                if attempt + 1 >= self.max_attempts:
                    logger.error(f"All {self.max_attempts} attempts failed for {name}: {e}")
                    raise

                delay = self.delay_for(attempt)
                if isinstance(e, RateLimited) and e.retry_after:
                    delay = max(delay, min(e.retry_after, self.max_delay))

                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} failed for {name}: {e}. "
                    f"Retrying in {delay:.2f} seconds..."
                )
                await self.clock.sleep(delay)

        # max_attempts >= 1 guarantees the loop either returned or raised
        raise RuntimeError("unreachable")
