"""Persistent sync bookkeeping: checkpoints, exported ids, fingerprints, failures and history."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from shared.kv_store import KeyValueStore
from shared.models import Checkpoint, FailureRecord

logger = logging.getLogger(__name__)

CHECKPOINTS_KEY = "syncCheckpoints"
EXPORTED_KEY = "exportedIds"
FINGERPRINTS_KEY = "exportFingerprints"
FAILURES_KEY = "failures"
HISTORY_KEY = "exportHistory"
SYNC_FLAG_KEY = "syncInProgress"
SYNC_START_KEY = "syncStartTime"
LAST_SYNC_KEY = "lastSyncDate"

MAX_FAILURES = 100
MAX_HISTORY = 50


def thread_key(platform: str, thread_id: str) -> str:
    return f"{platform}:{thread_id}"


class SyncStateStore:
    """
    Sync state kept in a key-value store.

    Only the sync engine writes checkpoints. A checkpoint's ``last_sync_time``
    never moves backwards except through ``reset_checkpoint``.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    # Checkpoints

    def _checkpoints(self) -> Dict[str, Dict[str, Any]]:
        return self.store.get_one(CHECKPOINTS_KEY, {}) or {}

    def get_checkpoint(self, platform: str) -> Checkpoint:
        data = self._checkpoints().get(platform)
        return Checkpoint.from_dict(data) if data else Checkpoint()

    def all_checkpoints(self) -> Dict[str, Checkpoint]:
        return {platform: Checkpoint.from_dict(data) for platform, data in self._checkpoints().items()}

    def advance_checkpoint(
        self,
        platform: str,
        sync_time: float,
        last_seen_id: Optional[str],
        now: Optional[float] = None
    ) -> Checkpoint:
        """
        Move a platform's checkpoint forward.

        Args:
            platform: Platform name
            sync_time: Proposed new watermark; ignored if older than the current one
            last_seen_id: Most recently seen thread id, if any
            now: Time recorded as ``updated_at``

        Returns:
            The stored checkpoint
        """
        checkpoints = self._checkpoints()
        current = Checkpoint.from_dict(checkpoints[platform]) if platform in checkpoints else Checkpoint()

        if sync_time < current.last_sync_time:
            logger.debug(
                f"Not moving {platform} checkpoint back from {current.last_sync_time} to {sync_time}"
            )

        updated = Checkpoint(
            last_sync_time=max(current.last_sync_time, sync_time),
            last_seen_id=last_seen_id or current.last_seen_id,
            updated_at=now if now is not None else sync_time,
        )
        checkpoints[platform] = updated.to_dict()
        self.store.set({CHECKPOINTS_KEY: checkpoints})
        return updated

    def reset_checkpoint(self, platform: str) -> None:
        checkpoints = self._checkpoints()
        if checkpoints.pop(platform, None) is not None:
            self.store.set({CHECKPOINTS_KEY: checkpoints})
            logger.info(f"Checkpoint for {platform} reset")

    # Exported ids

    def exported_ids(self) -> Set[str]:
        return set(self.store.get_one(EXPORTED_KEY, []) or [])

    def is_exported(self, platform: str, thread_id: str) -> bool:
        return thread_key(platform, thread_id) in self.exported_ids()

    def mark_exported(self, platform: str, thread_ids: Iterable[str]) -> None:
        exported = self.store.get_one(EXPORTED_KEY, []) or []
        known = set(exported)
        for thread_id in thread_ids:
            key = thread_key(platform, thread_id)
            if key not in known:
                exported.append(key)
                known.add(key)
        self.store.set({EXPORTED_KEY: exported})

    # Fingerprints

    def get_fingerprint(self, platform: str, thread_id: str) -> Optional[str]:
        return (self.store.get_one(FINGERPRINTS_KEY, {}) or {}).get(thread_key(platform, thread_id))

    def save_fingerprint(self, platform: str, thread_id: str, fingerprint: str) -> None:
        fingerprints = self.store.get_one(FINGERPRINTS_KEY, {}) or {}
        fingerprints[thread_key(platform, thread_id)] = fingerprint
        self.store.set({FINGERPRINTS_KEY: fingerprints})

    # Failures

    def record_failure(self, failure: FailureRecord) -> None:
        failures = self.store.get_one(FAILURES_KEY, []) or []
        failures.append(failure.to_dict())
        self.store.set({FAILURES_KEY: failures[-MAX_FAILURES:]})

    def failures(self, platform: Optional[str] = None) -> List[FailureRecord]:
        records = [FailureRecord(**data) for data in (self.store.get_one(FAILURES_KEY, []) or [])]
        if platform:
            records = [r for r in records if r.platform == platform]
        return records

    def clear_failures(self, platform: str, thread_id: Optional[str] = None) -> int:
        """Drop failure records for a platform, or for one thread of it. Returns how many were removed."""
        failures = self.store.get_one(FAILURES_KEY, []) or []
        kept = [
            f for f in failures
            if not (f["platform"] == platform and (thread_id is None or f["thread_id"] == thread_id))
        ]
        if len(kept) != len(failures):
            self.store.set({FAILURES_KEY: kept})
        return len(failures) - len(kept)

    # History

    def record_history(self, entry: Dict[str, Any]) -> None:
        history = self.store.get_one(HISTORY_KEY, []) or []
        history.insert(0, entry)
        self.store.set({HISTORY_KEY: history[:MAX_HISTORY]})

    def history(self) -> List[Dict[str, Any]]:
        return self.store.get_one(HISTORY_KEY, []) or []

    # Sync flag

    def set_sync_flag(self, in_progress: bool, start_time: Optional[float] = None) -> None:
        self.store.set({SYNC_FLAG_KEY: in_progress, SYNC_START_KEY: start_time if in_progress else None})

    def sync_flag(self) -> Dict[str, Any]:
        values = self.store.get([SYNC_FLAG_KEY, SYNC_START_KEY, LAST_SYNC_KEY])
        return {
            "in_progress": bool(values.get(SYNC_FLAG_KEY, False)),
            "start_time": values.get(SYNC_START_KEY),
            "last_sync": values.get(LAST_SYNC_KEY),
        }

    def set_last_sync(self, timestamp: float) -> None:
        self.store.set({LAST_SYNC_KEY: timestamp})
