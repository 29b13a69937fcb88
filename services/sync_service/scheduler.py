"""APScheduler-based timer that triggers periodic sync cycles."""

import logging
from typing import Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services.sync_service.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

JOB_ID = "auto_sync"


class SyncScheduler:
    """
    Runs the sync orchestrator on a fixed interval.

    The scheduled job and manual triggers share the orchestrator's lock, so a
    tick that lands during a manual sync is skipped rather than queued.
    """

    def __init__(self, orchestrator: SyncOrchestrator, interval_minutes: int = 60):
        if interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        self.orchestrator = orchestrator
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.job: Optional[Job] = None

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the scheduler and register the sync job."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        # first run one interval from now
        trigger = IntervalTrigger(minutes=self.interval_minutes, timezone="UTC")
        self.job = self.scheduler.add_job(
            func=self.tick,
            trigger=trigger,
            id=JOB_ID,
            name="Incremental chat sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Auto-sync scheduled every {self.interval_minutes} minutes")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def next_run_time(self) -> Optional[str]:
        if self.job is None or self.job.next_run_time is None:
            return None
        return self.job.next_run_time.isoformat()

    async def tick(self) -> None:
        """Scheduled entry point. Exceptions are logged so the job keeps running."""
        try:
            result = await self.orchestrator.run_cycle(trigger="scheduled")
            logger.info(f"Scheduled sync finished with status {result.status}")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}", exc_info=True)
