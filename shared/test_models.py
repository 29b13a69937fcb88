"""Unit tests for shared data models."""

import pytest

from shared.errors import DegradedExtraction
from shared.models import (
    Checkpoint,
    Entry,
    FailureRecord,
    SourceSyncResult,
    SyncCycleResult,
    Thread,
    ThreadDetail,
)


class TestThread:
    """Tests for Thread dataclass."""

    def test_key_combines_platform_and_id(self):
        """Identity is (platform, id)."""
        thread = Thread(id="abc", title="Hello", platform="perplexity")

        assert thread.key == "perplexity:abc"
        assert thread.last_activity_time is None

    def test_same_id_on_different_platforms_differs(self):
        a = Thread(id="1", title="a", platform="claude")
        b = Thread(id="1", title="a", platform="chatgpt")

        assert a.key != b.key


class TestThreadDetail:
    """Tests for ThreadDetail dataclass."""

    def test_ok_without_error(self):
        detail = ThreadDetail(thread=Thread(id="1", title="t", platform="grok"), entries=[Entry("q", "a")])
        assert detail.ok is True
        assert detail.degraded is None

    def test_not_ok_with_error(self):
        detail = ThreadDetail(thread=Thread(id="1", title="t", platform="grok"), error="blocked")
        assert detail.ok is False
        assert detail.entries == []

    def test_degraded_marker(self):
        detail = ThreadDetail(
            thread=Thread(id="1", title="t", platform="grok"),
            entries=[Entry("q", "a")],
            degraded=DegradedExtraction("role_attribute")
        )
        assert detail.ok is True
        assert detail.degraded == DegradedExtraction("role_attribute")


class TestCheckpoint:
    """Tests for Checkpoint serialization."""

    def test_round_trip(self):
        checkpoint = Checkpoint(last_sync_time=15.0, last_seen_id="b", updated_at=16.0)

        data = checkpoint.to_dict()

        assert data == {"lastSyncTime": 15.0, "lastSeenId": "b", "updatedAt": 16.0}
        assert Checkpoint.from_dict(data) == checkpoint

    def test_from_empty_dict(self):
        checkpoint = Checkpoint.from_dict({})
        assert checkpoint.last_sync_time == 0.0
        assert checkpoint.last_seen_id is None


class TestSyncCycleResult:
    """Tests for cycle aggregation."""

    def test_totals_sum_sources(self):
        result = SyncCycleResult(
            status="completed",
            sources=[
                SourceSyncResult(platform="claude", new=3, exported=2, failed=1),
                SourceSyncResult(platform="grok", new=2, exported=1, skipped_unchanged=1),
            ]
        )

        assert result.total == 5
        assert result.exported == 3
        assert result.failed == 1
        assert result.skipped == 1

        data = result.to_dict()
        assert data["exported"] == 3
        assert data["sources"][0]["platform"] == "claude"

    def test_failure_record_to_dict(self):
        record = FailureRecord(thread_id="t1", platform="claude", reason="boom", timestamp=1.0, code="transport_error")
        assert record.to_dict()["code"] == "transport_error"
