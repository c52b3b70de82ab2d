"""Job queue runner.

Drains queued sync jobs in priority order and executes them through the
inbound reconciler. Failed jobs are re-queued until their retry budget is
spent.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from attachsync.core.types import EventSource, JobStatus, JobType, Severity
from attachsync.sync.types import JobRunStats

if TYPE_CHECKING:
    from attachsync.server.database import Database
    from attachsync.server.models import SyncJob
    from attachsync.sync.reconcile import InboundReconciler

logger = logging.getLogger(__name__)


class SyncJobRunner:
    """Executes queued RECONCILE and DOWNLOAD jobs."""

    def __init__(self, db: Database, reconciler: InboundReconciler) -> None:
        self._db = db
        self._reconciler = reconciler

    async def _execute(self, job: SyncJob) -> None:
        job_type = JobType(job.job_type)
        if job_type == JobType.DOWNLOAD and job.attachment_id:
            await self._reconciler.pull_attachment(job.work_item_id, job.attachment_id)
            return
        result = await self._reconciler.reconcile(job.work_item_id)
        if result.errors:
            logger.warning(
                f"Job {job.id}: {len(result.errors)} attachment(s) of work item "
                f"{job.work_item_id} failed"
            )

    async def run_pending(self, limit: int = 10) -> JobRunStats:
        """Run up to ``limit`` queued jobs.

        A job re-queued after a failure is not retried within the same call.

        Returns:
            JobRunStats for this drain.
        """
        stats = JobRunStats()
        attempted: set[int] = set()
        while stats.processed < limit:
            job = self._db.claim_next_job(exclude=attempted)
            if job is None:
                break
            attempted.add(job.id)
            stats.processed += 1
            logger.info(f"Running job {job.id} ({job.job_type} work item {job.work_item_id})")
            try:
                await self._execute(job)
            except Exception as e:
                logger.exception(f"Job {job.id} failed")
                updated = self._db.fail_job(job.id, str(e))
                if updated is not None and updated.status == JobStatus.QUEUED.value:
                    stats.requeued += 1
                    severity = Severity.WARN
                else:
                    stats.failed += 1
                    severity = Severity.ERROR
                self._db.record_event(
                    "job.failed",
                    f"Job {job.id} ({job.job_type}) failed: {e}",
                    severity=severity,
                    source=EventSource.SYSTEM,
                    work_item_id=job.work_item_id,
                    attachment_id=job.attachment_id,
                    details={
                        "job_id": job.id,
                        "retry_count": updated.retry_count if updated else None,
                        "requeued": severity == Severity.WARN,
                    },
                )
            else:
                self._db.complete_job(job.id)
                stats.succeeded += 1
        if stats.processed:
            logger.info(
                f"Job run: {stats.processed} processed, {stats.succeeded} succeeded, "
                f"{stats.requeued} requeued, {stats.failed} failed"
            )
        return stats
