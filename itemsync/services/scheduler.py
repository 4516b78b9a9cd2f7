"""Background scheduler for periodic sync passes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from itemsync.core.time_utils import UTC

if TYPE_CHECKING:
    from itemsync.config import SyncConfig
    from itemsync.sync.engine import ReconciliationEngine

logger = logging.getLogger(__name__)

SYNC_ALL_JOB_ID = "sync_all"


class SchedulerService:
    """Runs ``ReconciliationEngine.sync_all`` on a fixed interval."""

    def __init__(self, cfg: SyncConfig, engine: ReconciliationEngine) -> None:
        """Initialize scheduler service.

        Args:
            cfg: Sync configuration (interval and auto-sync switch)
            engine: Engine whose providers are synced
        """
        self.cfg = cfg
        self.engine = engine
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    async def start(self) -> None:
        """Start the scheduler with the periodic sync job when enabled."""
        if self._started:
            logger.warning("scheduler_already_started")
            return

        self._scheduler = AsyncIOScheduler(timezone=UTC)

        if self.cfg.auto_sync_enabled:
            self._scheduler.add_job(
                self._run_sync_all,
                trigger=IntervalTrigger(minutes=self.cfg.sync_interval_minutes),
                id=SYNC_ALL_JOB_ID,
                name="Provider sync",
                replace_existing=True,
                max_instances=1,  # Prevent overlapping runs
            )
            logger.info(
                "scheduler_sync_job_added",
                extra={
                    "job_id": SYNC_ALL_JOB_ID,
                    "interval_minutes": self.cfg.sync_interval_minutes,
                },
            )
        else:
            logger.info("scheduler_sync_job_skipped", extra={"auto_sync_enabled": False})

        self._scheduler.start()
        self._started = True
        logger.info("scheduler_started")

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self._started = False
            logger.info("scheduler_stopped")

    async def _run_sync_all(self) -> None:
        """Execute a scheduled sync of every enabled provider."""
        correlation_id = f"scheduled_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S')}"
        logger.info("scheduled_sync_starting", extra={"cid": correlation_id})

        try:
            results = await self.engine.sync_all()
        except Exception as e:
            logger.exception(
                "scheduled_sync_failed",
                extra={"cid": correlation_id, "error": str(e)},
            )
            return

        logger.info(
            "scheduled_sync_complete",
            extra={
                "cid": correlation_id,
                "providers": len(results),
                "failed_providers": [r.provider_id for r in results if not r.success],
                "added": sum(r.added for r in results),
                "updated": sum(r.updated for r in results),
                "deleted": sum(r.deleted for r in results),
                "apply_failed": sum(r.apply_failed for r in results),
            },
        )

    def get_next_run_time(self, job_id: str = SYNC_ALL_JOB_ID) -> datetime | None:
        """Get next scheduled run time for a job.

        Returns:
            Next run time or None if job doesn't exist or scheduler not started
        """
        if not self._scheduler or not self._started:
            return None
        job = self._scheduler.get_job(job_id)
        return job.next_run_time if job else None

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self._scheduler is not None
