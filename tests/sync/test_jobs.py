"""Tests for the sync job runner."""

import pytest

from attachsync.core.types import JobStatus, JobType, Severity
from attachsync.server.database import Database
from attachsync.sync.engine import SyncEngine

from tests.conftest import FakeTracker


class TestSyncJobRunner:
    """Tests for SyncJobRunner.run_pending()."""

    @pytest.mark.asyncio
    async def test_runs_reconcile_job(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        attachment_id = tracker.add_remote_attachment(12, b"data", "data.txt")
        job, created = engine.enqueue_reconcile(12)

        stats = await engine.run_jobs()

        assert created is True
        assert stats.processed == 1
        assert stats.succeeded == 1
        finished = db.get_job(job.id)
        assert finished is not None
        assert finished.status == JobStatus.DONE.value
        assert finished.completed_at is not None
        assert db.get_attachment(attachment_id) is not None

    @pytest.mark.asyncio
    async def test_runs_download_job(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        attachment_id = tracker.add_remote_attachment(12, b"data", "data.txt")
        db.enqueue_job(12, JobType.DOWNLOAD, attachment_id=attachment_id)

        stats = await engine.run_jobs()

        assert stats.succeeded == 1
        assert db.get_attachment(attachment_id) is not None

    @pytest.mark.asyncio
    async def test_runs_in_priority_order(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        db.enqueue_job(1, JobType.RECONCILE, priority=5)
        db.enqueue_job(2, JobType.RECONCILE, priority=1)
        db.enqueue_job(3, JobType.RECONCILE, priority=5)

        await engine.run_jobs()

        fetched = [r.url.path.rsplit("/", 1)[-1] for r in tracker.requests]
        assert fetched == ["2", "1", "3"]

    @pytest.mark.asyncio
    async def test_respects_limit(self, engine: SyncEngine, db: Database) -> None:
        for work_item_id in (1, 2, 3):
            db.enqueue_job(work_item_id, JobType.RECONCILE)

        stats = await engine.run_jobs(limit=2)

        assert stats.processed == 2
        assert len(db.list_jobs(status=JobStatus.QUEUED)) == 1

    @pytest.mark.asyncio
    async def test_failed_job_is_requeued_once_per_run(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        tracker.fail("GET", "/workitems/12", 404, times=5)
        job, _ = db.enqueue_job(12, JobType.RECONCILE, max_retries=3)

        stats = await engine.run_jobs()

        assert stats.processed == 1
        assert stats.requeued == 1
        retried = db.get_job(job.id)
        assert retried is not None
        assert retried.status == JobStatus.QUEUED.value
        assert retried.retry_count == 1
        assert "404" in (retried.error_message or "")
        assert db.list_events(work_item_id=12)[0].severity == Severity.WARN.value

    @pytest.mark.asyncio
    async def test_job_fails_after_max_retries(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        tracker.fail("GET", "/workitems/12", 404, times=5)
        job, _ = db.enqueue_job(12, JobType.RECONCILE, max_retries=2)

        first = await engine.run_jobs()
        second = await engine.run_jobs()

        assert first.requeued == 1
        assert second.failed == 1
        failed = db.get_job(job.id)
        assert failed is not None
        assert failed.status == JobStatus.FAILED.value
        assert failed.retry_count == 2
        events = db.list_events(work_item_id=12, severity=Severity.ERROR)
        assert events[0].event_type == "job.failed"

    @pytest.mark.asyncio
    async def test_empty_queue(self, engine: SyncEngine) -> None:
        stats = await engine.run_jobs()
        assert stats.processed == 0
