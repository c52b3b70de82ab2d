"""Scheduler for background sync and maintenance tasks.

This module provides:
- Periodic draining of the sync job queue
- Hourly purge of expired chunked upload sessions
- Daily sync event log cleanup at 3:00 AM
- Manual triggers for CLI/API usage
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from attachsync.sync.engine import SyncEngine
    from attachsync.sync.types import JobRunStats

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the job queue and maintenance tasks on the event loop.

    Jobs:
    - Queue drain every ``job_interval_seconds``
    - Expired upload session cleanup at the top of every hour
    - Event log cleanup daily at ``hour``:``minute``
    """

    def __init__(
        self,
        engine: SyncEngine,
        job_interval_seconds: int = 30,
        retention_days: int = 30,
        hour: int = 3,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Sync engine whose queue and store are maintained.
            job_interval_seconds: Seconds between queue drains.
            retention_days: Number of days to retain sync events.
            hour: Hour to run the event cleanup (0-23).
            minute: Minute to run the event cleanup (0-59).
        """
        self._engine = engine
        self._job_interval_seconds = job_interval_seconds
        self._retention_days = retention_days
        self._hour = hour
        self._minute = minute
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def _drain_jobs(self) -> None:
        """Job function for the periodic queue drain."""
        try:
            await self._engine.run_jobs()
        except Exception:
            logger.exception("Error during scheduled job queue drain")

    def _cleanup_sessions_job(self) -> None:
        """Job function for the hourly upload session cleanup."""
        try:
            deleted = self._engine.cleanup_expired_sessions()
            if deleted > 0:
                logger.info("Session cleanup: %d expired upload sessions deleted", deleted)
            else:
                logger.debug("Session cleanup: no expired upload sessions")
        except Exception:
            logger.exception("Error during scheduled upload session cleanup")

    def _cleanup_events_job(self) -> None:
        """Job function for the daily event log cleanup."""
        logger.info(
            "Starting scheduled event log cleanup (retention: %d days)",
            self._retention_days,
        )
        try:
            deleted = self._engine.db.cleanup_old_events(self._retention_days)
            if deleted > 0:
                logger.info("Event log cleanup: %d old entries deleted", deleted)
            else:
                logger.debug(
                    "Event log cleanup: no entries older than %d days",
                    self._retention_days,
                )
        except Exception:
            logger.exception("Error during scheduled event log cleanup")

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self._scheduler is not None:
            return  # Already running

        requeued = self._engine.db.requeue_running_jobs()
        if requeued:
            logger.info("Re-queued %d jobs interrupted by a previous shutdown", requeued)

        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())

        self._scheduler.add_job(
            self._drain_jobs,
            trigger=IntervalTrigger(seconds=self._job_interval_seconds),
            id="job_queue_drain",
            name="Sync job queue drain",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.add_job(
            self._cleanup_sessions_job,
            trigger=CronTrigger(minute=0),
            id="upload_session_cleanup",
            name="Hourly upload session cleanup",
            replace_existing=True,
        )

        self._scheduler.add_job(
            self._cleanup_events_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="event_log_cleanup",
            name="Daily event log cleanup",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Sync scheduler started (queue every %ds, event retention: %d days)",
            self._job_interval_seconds,
            self._retention_days,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    async def drain_now(self) -> JobRunStats:
        """Drain the job queue immediately (manual trigger)."""
        return await self._engine.run_jobs()

    def cleanup_sessions_now(self) -> int:
        """Purge expired upload sessions immediately (manual trigger)."""
        return self._engine.cleanup_expired_sessions()

    def cleanup_events_now(self) -> int:
        """Run the event log cleanup immediately (manual trigger)."""
        return self._engine.db.cleanup_old_events(self._retention_days)
