"""Unit tests for the rate-limited dispatch queue."""

import asyncio

import pytest

from services.notion_writer.dispatch_queue import DispatchQueue
from shared.errors import AuthError, QueueTimeout, RateLimited, TransportError
from shared.retry import BackoffPolicy


def recording_task(clock, times, value=None):
    async def task():
        times.append(clock.now())
        return value
    return task


class TestWindowBudget:
    """Sliding window behaviour."""

    @pytest.mark.asyncio
    async def test_third_task_waits_for_window(self, fake_clock):
        """Budget 2/60s with 3 tasks at t=0: two run immediately, the third after 60s."""
        queue = DispatchQueue(requests_per_window=2, window=60.0, clock=fake_clock)
        start = fake_clock.now()
        times = []

        results = await asyncio.gather(*[
            queue.enqueue(recording_task(fake_clock, times, value=i)) for i in range(3)
        ])

        assert results == [0, 1, 2]
        offsets = [t - start for t in times]
        assert offsets[0] == 0
        assert offsets[1] < 60
        assert offsets[2] >= 60

    @pytest.mark.asyncio
    async def test_never_exceeds_budget(self, fake_clock):
        queue = DispatchQueue(requests_per_window=3, window=10.0, clock=fake_clock)
        times = []

        await asyncio.gather(*[queue.enqueue(recording_task(fake_clock, times)) for _ in range(10)])

        assert len(times) == 10
        for t in times:
            in_window = [other for other in times if t <= other < t + 10.0]
            assert len(in_window) <= 3

    @pytest.mark.asyncio
    async def test_fifo_order_and_pacing(self, fake_clock):
        queue = DispatchQueue(requests_per_window=30, window=60.0, clock=fake_clock)
        order = []

        def task(i):
            async def run():
                order.append(i)
            return run

        await asyncio.gather(*[queue.enqueue(task(i)) for i in range(4)])

        assert order == [0, 1, 2, 3]
        assert fake_clock.sleeps[:4] == [0.5, 0.5, 0.5, 0.5]

    @pytest.mark.asyncio
    async def test_busy_queue_paces_faster(self, fake_clock):
        queue = DispatchQueue(requests_per_window=1000, window=60.0, clock=fake_clock)
        times = []

        await asyncio.gather(*[queue.enqueue(recording_task(fake_clock, times)) for _ in range(53)])

        assert fake_clock.sleeps[0] == 0.2
        assert fake_clock.sleeps[-1] == 0.5


class TestFailures:
    """Per-task failures and stale entries."""

    @pytest.mark.asyncio
    async def test_failure_rejects_only_its_task(self, fake_clock):
        queue = DispatchQueue(clock=fake_clock)

        async def broken():
            raise TransportError("boom")

        async def fine():
            return "ok"

        results = await asyncio.gather(queue.enqueue(broken), queue.enqueue(fine), return_exceptions=True)

        assert isinstance(results[0], TransportError)
        assert results[1] == "ok"

    @pytest.mark.asyncio
    async def test_stale_entries_time_out(self, fake_clock):
        queue = DispatchQueue(stale_after=300.0, clock=fake_clock)

        async def slow():
            fake_clock.advance(301)
            return "slow"

        async def late():
            return "late"

        results = await asyncio.gather(queue.enqueue(slow), queue.enqueue(late), return_exceptions=True)

        assert results[0] == "slow"
        assert isinstance(results[1], QueueTimeout)
        assert queue.expired == 1

    @pytest.mark.asyncio
    async def test_close_fails_pending(self, fake_clock):
        queue = DispatchQueue(requests_per_window=1, window=60.0, clock=fake_clock)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()

        first = queue.enqueue(blocked)
        second = queue.enqueue(blocked)
        await asyncio.sleep(0)

        await queue.close()

        with pytest.raises(QueueTimeout):
            await second
        assert first.cancelled()


class TestSubmit:
    """Retry-wrapped dispatch."""

    @pytest.fixture
    def queue(self, fake_clock):
        return DispatchQueue(clock=fake_clock, retry_policy=BackoffPolicy(clock=fake_clock))

    @pytest.mark.asyncio
    async def test_retries_transport_errors(self, queue, fake_clock):
        calls = []

        async def flaky():
            calls.append(fake_clock.now())
            if len(calls) < 3:
                raise TransportError("reset")
            return "done"

        assert await queue.submit(flaky) == "done"
        assert len(calls) == 3
        assert 2.0 in fake_clock.sleeps
        assert 4.0 in fake_clock.sleeps
        assert queue.dispatched == 3

    @pytest.mark.asyncio
    async def test_rate_limit_respects_retry_after(self, queue, fake_clock):
        calls = []

        async def limited():
            calls.append(1)
            if len(calls) == 1:
                raise RateLimited(retry_after=7.0)
            return "done"

        assert await queue.submit(limited) == "done"
        assert 7.0 in fake_clock.sleeps

    @pytest.mark.asyncio
    async def test_auth_error_aborts(self, queue):
        calls = []

        async def denied():
            calls.append(1)
            raise AuthError()

        with pytest.raises(AuthError):
            await queue.submit(denied)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, queue):
        calls = []

        async def down():
            calls.append(1)
            raise TransportError("down")

        with pytest.raises(TransportError):
            await queue.submit(down)
        assert len(calls) == 3

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            DispatchQueue(requests_per_window=0)
