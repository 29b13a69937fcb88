"""Sync orchestration logic."""

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.chat_extractor.base import SourceAdapter
from services.chat_extractor.registry import AdapterRegistry
from services.notion_writer.writer import NotionWriter
from services.sync_service.checkpoints import SyncStateStore
from services.sync_service.fingerprint import DuplicateDetector
from services.sync_service.notifications import NotificationService
from shared.clock import Clock
from shared.errors import AuthError, SyncError
from shared.models import Checkpoint, FailureRecord, SourceSyncResult, SyncCycleResult, Thread

logger = logging.getLogger(__name__)

# checkpoint lands this far below the oldest unprocessed item
BACKLOG_EPSILON = 0.001


class SyncStage(str, Enum):
    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    CHECKPOINT_LOADED = "checkpoint_loaded"
    LISTING = "listing"
    FILTERING = "filtering"
    DISPATCHING = "dispatching"
    CHECKPOINT_ADVANCED = "checkpoint_advanced"
    LOCK_RELEASED = "lock_released"


class SyncLockBusy(Exception):
    """Raised when a sync is requested while another one holds the lock."""


class SyncLock:
    """
    Process-wide, non-queuing sync lock.

    A second caller does not wait: ``hold()`` raises SyncLockBusy immediately.
    The held state is mirrored into the state store as ``syncInProgress``.
    """

    def __init__(self, state: Optional[SyncStateStore] = None, clock: Optional[Clock] = None):
        self.state = state
        self.clock = clock or Clock()
        self._held = False

    @property
    def locked(self) -> bool:
        return self._held

    @asynccontextmanager
    async def hold(self):
        if self._held:
            raise SyncLockBusy("Another sync is in progress")
        self._held = True
        try:
            if self.state:
                self.state.set_sync_flag(True, self.clock.now())
            yield self
        finally:
            self._held = False
            if self.state:
                self.state.set_sync_flag(False)


class SyncOrchestrator:
    """Runs incremental sync cycles from the chat platforms into Notion."""

    def __init__(
        self,
        registry: AdapterRegistry,
        writer: NotionWriter,
        state: SyncStateStore,
        lock: Optional[SyncLock] = None,
        clock: Optional[Clock] = None,
        notification_service: Optional[NotificationService] = None,
        max_items_per_cycle: int = 10,
        sub_batch_size: int = 5,
        listing_limit: int = 50,
        max_listing_pages: int = 20,
        batch_pause: float = 2.0,
        item_pause: float = 1.0
    ):
        """
        Initialize the sync orchestrator.

        Args:
            registry: Source adapters by platform
            writer: Notion writer; every call goes through its dispatch queue
            state: Checkpoints, exported ids, fingerprints and failure log
            lock: Lock shared with every other trigger of this process
            clock: Time source for pauses and timestamps
            notification_service: Critical error notifications
            max_items_per_cycle: New threads exported per platform per cycle
            sub_batch_size: Threads per sub-batch
            listing_limit: Threads requested per listing page
            max_listing_pages: Listing pages read per platform per cycle while looking for the checkpoint
            batch_pause: Seconds between sub-batches
            item_pause: Seconds after each thread
        """
        self.registry = registry
        self.writer = writer
        self.state = state
        self.clock = clock or Clock()
        self.lock = lock or SyncLock(state, self.clock)
        self.notification_service = notification_service or NotificationService()
        self.detector = DuplicateDetector(state)
        self.max_items_per_cycle = max_items_per_cycle
        self.sub_batch_size = max(1, sub_batch_size)
        self.listing_limit = listing_limit
        self.max_listing_pages = max(1, max_listing_pages)
        self.batch_pause = batch_pause
        self.item_pause = item_pause

        self.stage = SyncStage.IDLE
        self.last_result: Optional[SyncCycleResult] = None

    def _enter(self, stage: SyncStage) -> None:
        self.stage = stage
        logger.debug(f"Sync stage: {stage.value}")

    def _select(self, platforms: Optional[Iterable[str]]) -> List[SourceAdapter]:
        if not platforms:
            return list(self.registry)
        adapters = []
        for name in platforms:
            adapter = self.registry.get(name)
            if adapter is None:
                raise ValueError(f"Unknown platform: {name}")
            adapters.append(adapter)
        return adapters

    async def run_cycle(
        self,
        trigger: str = "manual",
        platforms: Optional[Iterable[str]] = None,
        force: bool = False
    ) -> SyncCycleResult:
        """
        Execute one sync cycle over all registered platforms, or the ones named.

        Returns a ``skipped`` result right away when another cycle holds the lock.

        Raises:
            ValueError: If an unknown platform is named
        """
        adapters = self._select(platforms)
        result = SyncCycleResult(status="completed", trigger=trigger, started_at=self.clock.now())

        try:
            async with self.lock.hold():
                self._enter(SyncStage.LOCK_ACQUIRED)
                logger.info(f"Starting {trigger} sync for {', '.join(a.platform for a in adapters) or 'no platforms'}")
                try:
                    for adapter in adapters:
                        result.sources.append(await self._sync_source(adapter, force))
                except Exception as e:
                    logger.error(f"Sync cycle failed at stage {self.stage.value}: {e}", exc_info=True)
                    result.status = "failed"
                    result.error = str(e)
                    await self.notification_service.send_critical_error_notification(
                        source="sync",
                        error_message=str(e),
                        context={"stage": self.stage.value, "trigger": trigger}
                    )
        except SyncLockBusy:
            logger.info("Another sync is in progress, skipping")
            result.status = "skipped"
            result.finished_at = self.clock.now()
            return result
        except Exception as e:
            # state store failed while taking or releasing the lock
            logger.error(f"Sync state unavailable: {e}", exc_info=True)
            result.status = "failed"
            result.error = str(e)
            result.finished_at = self.clock.now()
            self.last_result = result
            self._enter(SyncStage.IDLE)
            await self.notification_service.send_critical_error_notification(
                source="sync",
                error_message=str(e),
                context={"stage": "lock", "trigger": trigger}
            )
            return result

        self._enter(SyncStage.LOCK_RELEASED)
        result.finished_at = self.clock.now()
        self.state.set_last_sync(result.finished_at)
        self.state.record_history({
            "timestamp": result.finished_at,
            "total": result.total,
            "success": result.exported,
            "failed": result.failed,
            "skipped": result.skipped,
            "trigger": trigger,
            "status": result.status,
        })
        self.last_result = result
        self._enter(SyncStage.IDLE)

        logger.info(
            f"Sync {result.status}: {result.exported} exported, {result.failed} failed, "
            f"{result.skipped} unchanged"
        )
        return result

    @staticmethod
    def filter_new(threads: List[Thread], checkpoint: Checkpoint, exported_ids: Iterable[str] = ()) -> List[Thread]:
        """Threads active after the checkpoint and not exported yet. Threads without a time count as new."""
        exported = set(exported_ids)
        return [
            t for t in threads
            if (t.last_activity_time is None or t.last_activity_time > checkpoint.last_sync_time)
            and t.key not in exported
        ]

    async def _sync_source(self, adapter: SourceAdapter, force: bool) -> SourceSyncResult:
        platform = adapter.platform
        source = SourceSyncResult(platform=platform)

        try:
            checkpoint = self.state.get_checkpoint(platform)
            self._enter(SyncStage.CHECKPOINT_LOADED)

            self._enter(SyncStage.LISTING)
            adapter.cursor_cache.invalidate()
            threads, reached_checkpoint = await self._list_since(adapter, checkpoint)
            source.found = len(threads)

            self._enter(SyncStage.FILTERING)
            new_threads = self.filter_new(threads, checkpoint, self.state.exported_ids())
            batch = new_threads[:self.max_items_per_cycle]
            backlog = new_threads[self.max_items_per_cycle:]
            source.new = len(new_threads)
            source.backlog = len(backlog)
            logger.info(
                f"[{platform}] {len(new_threads)} new of {len(threads)} listed since "
                f"{checkpoint.last_sync_time}; exporting {len(batch)}"
            )

            self._enter(SyncStage.DISPATCHING)
            for start in range(0, len(batch), self.sub_batch_size):
                if start:
                    await self.clock.sleep(self.batch_pause)
                for thread in batch[start:start + self.sub_batch_size]:
                    await self._export_thread(adapter, thread, force, source)
                    await self.clock.sleep(self.item_pause)

            if reached_checkpoint:
                self._advance_checkpoint(platform, threads, backlog)
            else:
                logger.warning(
                    f"[{platform}] Listing stopped after {len(threads)} threads without reaching the "
                    f"checkpoint; keeping it at {checkpoint.last_sync_time}"
                )
            self._enter(SyncStage.CHECKPOINT_ADVANCED)

        except AuthError as e:
            if e.platform not in (None, platform):
                raise
            logger.error(f"[{platform}] Authentication required: {e}")
            source.status = "failed"
            source.error = str(e)
            await self.notification_service.notify_reauth_required(platform, str(e))

        except SyncError as e:
            logger.error(f"[{platform}] Source sync failed ({e.code}): {e}")
            source.status = "failed"
            source.error = str(e)

        return source

    async def _list_since(self, adapter: SourceAdapter, checkpoint: Checkpoint) -> Tuple[List[Thread], bool]:
        """
        List threads newest first, page by page, until the listing reaches the checkpoint.

        Returns:
            The listed threads, and whether every thread newer than the
            checkpoint was listed (False when ``max_listing_pages`` ran out first)
        """
        threads: List[Thread] = []
        seen = set()
        offset = 0
        for _ in range(self.max_listing_pages):
            page = await adapter.list_items(offset, self.listing_limit)
            for item in page.items:
                if item.id not in seen:
                    seen.add(item.id)
                    threads.append(item)
            if not page.has_more or not page.items:
                return threads, True
            times = [t.last_activity_time for t in page.items if t.last_activity_time is not None]
            if times and min(times) <= checkpoint.last_sync_time:
                return threads, True
            offset += len(page.items)
        return threads, False

    def _advance_checkpoint(self, platform: str, threads: List[Thread], backlog: List[Thread]) -> Checkpoint:
        now = self.clock.now()
        backlog_times = [t.last_activity_time for t in backlog if t.last_activity_time is not None]
        target = min(backlog_times) - BACKLOG_EPSILON if backlog_times else now
        checkpoint = self.state.advance_checkpoint(
            platform,
            target,
            last_seen_id=threads[0].id if threads else None,
            now=now
        )
        if backlog:
            logger.info(f"[{platform}] {len(backlog)} threads left for the next cycle")
        return checkpoint

    async def _export_thread(self, adapter: SourceAdapter, thread: Thread, force: bool, source: SourceSyncResult) -> str:
        """
        Fetch one thread and write it to Notion.

        Returns:
            "exported", "unchanged" or "failed"
        """
        platform = adapter.platform
        try:
            detail = await adapter.fetch_detail(thread.id)
            if detail.thread.last_activity_time is None:
                detail.thread.last_activity_time = thread.last_activity_time
            if not detail.thread.url:
                detail.thread.url = thread.url or adapter.thread_url(thread.id)
            if thread.title and detail.thread.title in ("", "Untitled"):
                detail.thread.title = thread.title

            if not detail.ok or not detail.entries:
                reason = detail.error or "No entries extracted"
                self._record_failure(platform, thread.id, reason, "not_found" if detail.error else "validation_error")
                source.failed += 1
                return "failed"

            if detail.degraded:
                source.degraded += 1

            if self.detector.should_skip(detail, force):
                self.state.mark_exported(platform, [thread.id])
                source.skipped_unchanged += 1
                return "unchanged"

            page = await self.writer.export_thread(detail)

        except AuthError:
            raise
        except SyncError as e:
            logger.warning(f"[{platform}] Failed to export {thread.id} ({e.code}): {e}")
            self._record_failure(platform, thread.id, str(e), e.code)
            source.failed += 1
            return "failed"
        except Exception as e:
            logger.error(f"[{platform}] Unexpected error exporting {thread.id}: {e}", exc_info=True)
            self._record_failure(platform, thread.id, str(e), "unexpected_error")
            source.failed += 1
            return "failed"

        self.state.mark_exported(platform, [thread.id])
        self.detector.remember(detail)
        self.state.clear_failures(platform, thread.id)
        source.exported += 1
        logger.info(f"[{platform}] Exported {thread.id} to Notion page {page['page_id']}")
        return "exported"

    def _record_failure(self, platform: str, thread_id: str, reason: str, code: Optional[str]) -> None:
        self.state.record_failure(FailureRecord(
            thread_id=thread_id,
            platform=platform,
            reason=reason,
            timestamp=self.clock.now(),
            code=code,
        ))

    async def retry_item(self, platform: str, thread_id: str, force: bool = True) -> Dict[str, Any]:
        """
        Export a single thread through the same lock and queue as a cycle.

        Raises:
            ValueError: If the platform is unknown
        """
        adapter = self._select([platform])[0]
        source = SourceSyncResult(platform=platform)

        try:
            async with self.lock.hold():
                outcome = await self._export_thread(
                    adapter, Thread(id=thread_id, title="", platform=platform), force, source
                )
        except SyncLockBusy:
            return {"platform": platform, "thread_id": thread_id, "status": "skipped", "error": "Another sync is in progress"}
        except AuthError as e:
            await self.notification_service.notify_reauth_required(e.platform or platform, str(e))
            return {"platform": platform, "thread_id": thread_id, "status": "failed", "error": str(e)}

        error = None
        if outcome == "failed":
            failures = self.state.failures(platform)
            error = next((f.reason for f in reversed(failures) if f.thread_id == thread_id), None)
        return {"platform": platform, "thread_id": thread_id, "status": outcome, "error": error}

    def status(self) -> Dict[str, Any]:
        """Current stage, lock state, checkpoints and the last cycle."""
        return {
            "stage": self.stage.value,
            "in_progress": self.lock.locked,
            "sync_flag": self.state.sync_flag(),
            "checkpoints": {p: c.to_dict() for p, c in self.state.all_checkpoints().items()},
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "history": self.state.history()[:10],
        }
