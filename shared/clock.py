"""Injectable time source so every wait in the pipeline can be faked in tests."""

import asyncio
import time


class Clock:
    """Wall clock backed by time.time() and asyncio.sleep()."""

    def now(self) -> float:
        """Current time in epoch seconds."""
        return time.time()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
