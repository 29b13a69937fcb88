"""Shared pytest fixtures."""

import asyncio

import pytest

from shared.clock import Clock


class FakeClock(Clock):
    """Clock whose sleep advances virtual time instead of waiting."""

    def __init__(self, start: float = 1_000_000.0):
        self.current = start
        self.sleeps = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.current += seconds
        # let other tasks run, as a real sleep would
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    """Virtual clock starting at a fixed epoch."""
    return FakeClock()
