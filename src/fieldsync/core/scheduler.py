"""
Background scheduler for the periodic sync queue drain.
Uses APScheduler so queued operations are retried even without a reconnect event.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fieldsync.core.config import settings
from fieldsync.core.connectivity import ConnectionMonitor
from fieldsync.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "sync_queue_drain"


class SyncScheduler:
    """Runs ``SyncQueue.drain`` on an interval while online."""

    def __init__(
        self,
        sync_queue: SyncQueue,
        monitor: ConnectionMonitor,
        interval_seconds: Optional[int] = None,
    ):
        self.sync_queue = sync_queue
        self.monitor = monitor
        self.interval_seconds = interval_seconds or settings.queue.drain_interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def drain_job(self) -> None:
        """
        Background job to deliver queued operations.
        Runs every ``interval_seconds`` via APScheduler.
        """
        if not self.monitor.is_online:
            logger.debug("Skipping scheduled drain: offline")
            return

        try:
            report = await self.sync_queue.drain()
            if report.delivered or report.abandoned or report.blocked:
                logger.info(
                    f"Scheduled drain: {len(report.delivered)} delivered, "
                    f"{len(report.blocked)} blocked, {len(report.abandoned)} abandoned"
                )
        except Exception as e:
            logger.error(f"Scheduled sync queue drain failed: {str(e)}", exc_info=True)

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self.scheduler is not None and self.scheduler.running:
            return
        logger.info("Starting APScheduler for the sync queue...")

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.drain_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=DRAIN_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            name="Sync Queue Drain",
        )
        self.scheduler.start()
        logger.info(f"APScheduler started with jobs: sync queue drain ({self.interval_seconds}s)")

    def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("APScheduler shut down successfully")
        self.scheduler = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running
