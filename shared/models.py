"""Shared data models for the chat to Notion sync application."""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from shared.errors import DegradedExtraction


@dataclass
class Source:
    """A web citation attached to an answer."""
    title: str
    url: str


@dataclass
class Thread:
    """A conversation on a chat platform. Identity is (platform, id)."""
    id: str
    title: str
    platform: str
    last_activity_time: Optional[float] = None  # epoch seconds
    url: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.platform}:{self.id}"


@dataclass
class Entry:
    """One query/answer exchange inside a thread."""
    query: str
    answer: str
    created_at: Optional[float] = None
    sources: List[Source] = field(default_factory=list)


@dataclass
class ThreadDetail:
    """Full content of a thread, possibly degraded or empty with an error reason."""
    thread: Thread
    entries: List[Entry] = field(default_factory=list)
    error: Optional[str] = None
    degraded: Optional[DegradedExtraction] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Collection:
    """A user-defined grouping of threads (Perplexity spaces)."""
    id: str
    name: str
    platform: str


@dataclass
class ThreadPage:
    """One window of a thread listing."""
    items: List[Thread]
    has_more: bool
    offset: int = 0
    total: Optional[int] = None


@dataclass
class Checkpoint:
    """Per-platform sync watermark."""
    last_sync_time: float = 0.0
    last_seen_id: Optional[str] = None
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastSyncTime": self.last_sync_time,
            "lastSeenId": self.last_seen_id,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            last_sync_time=float(data.get("lastSyncTime") or 0.0),
            last_seen_id=data.get("lastSeenId"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class FailureRecord:
    """A thread that could not be exported, kept for manual retry."""
    thread_id: str
    platform: str
    reason: str
    timestamp: float
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SourceSyncResult:
    """Outcome of one sync cycle for a single platform."""
    platform: str
    status: str = "completed"  # completed, failed
    found: int = 0
    new: int = 0
    exported: int = 0
    skipped_unchanged: int = 0
    failed: int = 0
    degraded: int = 0
    backlog: int = 0
    error: Optional[str] = None


@dataclass
class SyncCycleResult:
    """Outcome of a whole sync cycle."""
    status: str  # skipped, completed, failed
    trigger: str = "manual"
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    sources: List[SourceSyncResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def exported(self) -> int:
        return sum(s.exported for s in self.sources)

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.sources)

    @property
    def skipped(self) -> int:
        return sum(s.skipped_unchanged for s in self.sources)

    @property
    def total(self) -> int:
        return sum(s.new for s in self.sources)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(
            total=self.total,
            exported=self.exported,
            failed=self.failed,
            skipped=self.skipped,
        )
        return data
