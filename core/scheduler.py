import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timezone
from typing import Optional

from core.config import settings
from features.offline.services.offline_cache import OfflineCache

logger = logging.getLogger(__name__)

class Scheduler:
    MAINTENANCE_JOB = "cache_maintenance"
    SYNC_JOB = "sync_drain"

    def __init__(
        self,
        offline_cache: OfflineCache,
        maintenance_interval: Optional[int] = None,
        sync_interval: Optional[int] = None
    ):
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.offline_cache = offline_cache
        self.maintenance_interval = maintenance_interval or settings.maintenance_interval_seconds
        self.sync_interval = sync_interval or settings.sync_interval_seconds

    async def run_maintenance(self) -> int:
        return self.offline_cache.cleanup_expired()

    async def run_sync(self) -> None:
        await self.offline_cache.sync_queue.drain()

    def start(self):
        """Start the scheduler with configured jobs."""
        logger.info("Starting scheduler")

        self.scheduler.add_job(
            self.run_maintenance,
            IntervalTrigger(seconds=self.maintenance_interval),
            id=self.MAINTENANCE_JOB,
            name=self.MAINTENANCE_JOB,
            max_instances=1,
            coalesce=True
        )

        # Queued uploads are retried on every pass, first one right away
        self.scheduler.add_job(
            self.run_sync,
            IntervalTrigger(seconds=self.sync_interval),
            id=self.SYNC_JOB,
            name=self.SYNC_JOB,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc)
        )

        self.scheduler.start()
        logger.info("Scheduler started successfully")

    def get_next_run_time(self, job_id: str) -> Optional[str]:
        """Get the next run time for a scheduled job."""
        job = self.scheduler.get_job(job_id)
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None

    def shutdown(self):
        """Shutdown the scheduler."""
        if self.scheduler.running:
            logger.info("Shutting down scheduler")
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown complete")
