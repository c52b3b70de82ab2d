"""Tests for inbound reconciliation."""

import pytest

from attachsync.core.config import SyncSettings
from attachsync.core.hashing import compute_content_hash
from attachsync.core.types import AttachmentSource, Severity, SyncStatus
from attachsync.remote.api import WorkItemClient
from attachsync.server.database import Database
from attachsync.server.storage import LocalFSStorage
from attachsync.sync.engine import SyncEngine
from attachsync.sync.types import AttachmentNotFoundError, ReconcileError

from tests.conftest import FakeTracker


class TestReconcile:
    """Tests for InboundReconciler.reconcile()."""

    @pytest.mark.asyncio
    async def test_pulls_only_missing_attachments(self, engine: SyncEngine, db: Database, storage: LocalFSStorage, tracker: FakeTracker) -> None:
        """Three remote attachments, one already known: two are downloaded."""
        known = tracker.add_remote_attachment(12, b"one", "one.txt")
        second = tracker.add_remote_attachment(12, b"two", "two.txt")
        third = tracker.add_remote_attachment(12, b"three", "three.log")
        db.create_attachment(
            known,
            compute_content_hash(b"one"),
            "one.txt",
            3,
            tracker.attachment_url(known, "one.txt"),
            AttachmentSource.LOCAL,
            sync_status=SyncStatus.SYNCED,
            work_item_id=12,
        )

        result = await engine.reconcile(12)

        assert sorted(result.added) == sorted([second, third])
        assert result.already_synced == [known]
        assert result.errors == []
        assert result.success
        assert tracker.count("GET", f"/attachments/{known}") == 0
        record = db.get_attachment(third)
        assert record is not None
        assert record.source == AttachmentSource.REMOTE.value
        assert record.sync_status == SyncStatus.SYNCED.value
        assert record.file_name == "three.log"
        assert storage.get(record.sha256) == b"three"

    @pytest.mark.asyncio
    async def test_second_pass_downloads_nothing(self, engine: SyncEngine, tracker: FakeTracker) -> None:
        tracker.add_remote_attachment(12, b"one", "one.txt")
        await engine.reconcile(12)

        result = await engine.reconcile(12)

        assert result.added == []
        assert len(result.already_synced) == 1
        assert tracker.count("GET", "/attachments/") == 1

    @pytest.mark.asyncio
    async def test_item_failure_does_not_abort_pass(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        good = tracker.add_remote_attachment(12, b"good", "good.txt")
        bad = tracker.add_remote_attachment(12, b"bad", "bad.txt")
        del tracker.blobs[bad]

        result = await engine.reconcile(12)

        assert result.added == [good]
        assert not result.success
        assert [e.attachment_id for e in result.errors] == [bad]
        assert result.errors[0].status_code == 404
        error_types = [e.event_type for e in db.list_events(work_item_id=12, severity=Severity.ERROR)]
        assert "reconcile.item_failed" in error_types
        completed = db.list_events(work_item_id=12, limit=1)[0]
        assert completed.event_type == "reconcile.completed"
        assert completed.severity == Severity.WARN.value

    @pytest.mark.asyncio
    async def test_relations_failure_raises(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        tracker.fail("GET", "/workitems/12", 404)

        with pytest.raises(ReconcileError) as exc_info:
            await engine.reconcile(12)

        assert exc_info.value.status_code == 404
        assert db.list_events(work_item_id=12)[0].event_type == "reconcile.failed"

    @pytest.mark.asyncio
    async def test_same_content_under_two_ids(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        tracker.add_remote_attachment(12, b"copy", "a.txt")
        tracker.add_remote_attachment(12, b"copy", "b.txt")

        result = await engine.reconcile(12)

        assert len(result.added) == 1
        assert len(result.already_synced) == 1
        assert len(db.list_attachments(12)) == 1
        event_types = [e.event_type for e in db.list_events(work_item_id=12)]
        assert "reconcile.duplicate_content" in event_types

    @pytest.mark.asyncio
    async def test_same_content_on_another_work_item_settles(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        """Repeated passes must not download content already held under another id."""
        first = tracker.add_remote_attachment(12, b"copy", "a.txt")
        second = tracker.add_remote_attachment(34, b"copy", "a.txt")
        await engine.reconcile(12)

        passes = [await engine.reconcile(34) for _ in range(3)]

        assert tracker.count("GET", "/attachments/") == 2
        assert all(p.already_synced == [second] and p.added == [] for p in passes)
        assert [r.attachment_id for r in db.list_attachments(34)] == [first]


class TestDeletionDetection:
    """Tests for remote deletion handling."""

    @pytest.mark.asyncio
    async def test_removed_relation_soft_deletes(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        keep = tracker.add_remote_attachment(12, b"keep", "keep.txt")
        gone = tracker.add_remote_attachment(12, b"gone", "gone.txt")
        await engine.reconcile(12)
        tracker.remove_relation(12, gone)

        result = await engine.reconcile(12)

        assert result.removed == [gone]
        assert db.get_attachment(gone) is None
        deleted = db.get_attachment(gone, include_deleted=True)
        assert deleted is not None
        assert deleted.is_deleted
        assert db.get_attachment(keep) is not None
        warnings = db.list_events(work_item_id=12, severity=Severity.WARN)
        assert warnings[0].event_type == "reconcile.removed"

    @pytest.mark.asyncio
    async def test_pending_uploads_are_kept(self, engine: SyncEngine, db: Database) -> None:
        """Records not yet linked must not be treated as remotely deleted."""
        result = await engine.upload(b"not linked yet", "draft.txt", work_item_id=12)

        reconciled = await engine.reconcile(12)

        assert reconciled.removed == []
        assert db.get_attachment(result.record.attachment_id) is not None

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(
        self,
        db: Database,
        storage: LocalFSStorage,
        client: WorkItemClient,
        tracker: FakeTracker,
    ) -> None:
        engine = SyncEngine(db, storage, client, SyncSettings(detect_remote_deletions=False))
        gone = tracker.add_remote_attachment(12, b"gone", "gone.txt")
        await engine.reconcile(12)
        tracker.remove_relation(12, gone)

        result = await engine.reconcile(12)

        assert result.removed == []
        assert db.get_attachment(gone) is not None

    @pytest.mark.asyncio
    async def test_locally_deleted_attachment_not_pulled_again(self, engine: SyncEngine, tracker: FakeTracker) -> None:
        attachment_id = tracker.add_remote_attachment(12, b"data", "data.txt")
        await engine.reconcile(12)
        engine.delete_attachment(attachment_id)

        result = await engine.reconcile(12)

        assert result.already_synced == [attachment_id]
        assert tracker.count("GET", "/attachments/") == 1

    @pytest.mark.asyncio
    async def test_attachment_linked_elsewhere_is_kept(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        result, _ = await engine.upload_and_link(b"shared", "shared.txt", 12)
        attachment_id = result.record.attachment_id
        await engine.link(attachment_id, 34)
        tracker.remove_relation(12, attachment_id)

        on_12 = await engine.reconcile(12)
        on_34 = await engine.reconcile(34)

        assert on_12.removed == []
        assert on_34.already_synced == [attachment_id]
        assert db.get_attachment(attachment_id) is not None
        assert [r.attachment_id for r in db.list_attachments(34)] == [attachment_id]
        assert db.get_attachment_by_hash(compute_content_hash(b"shared")) is not None

    @pytest.mark.asyncio
    async def test_removed_once_no_work_item_carries_it(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        result, _ = await engine.upload_and_link(b"shared", "shared.txt", 12)
        attachment_id = result.record.attachment_id
        await engine.link(attachment_id, 34)
        tracker.remove_relation(12, attachment_id)
        tracker.remove_relation(34, attachment_id)

        on_12 = await engine.reconcile(12)
        on_34 = await engine.reconcile(34)

        assert on_12.removed == []
        assert on_34.removed == [attachment_id]
        assert db.get_attachment(attachment_id) is None

    @pytest.mark.asyncio
    async def test_relation_added_back_restores_record(self, engine: SyncEngine, db: Database, tracker: FakeTracker) -> None:
        attachment_id = tracker.add_remote_attachment(12, b"data", "data.txt")
        await engine.reconcile(12)
        relation = tracker.relations[12][0]
        tracker.remove_relation(12, attachment_id)
        await engine.reconcile(12)
        tracker.relations[12].append(relation)

        result = await engine.reconcile(12)

        assert result.added == [attachment_id]
        assert db.get_attachment(attachment_id) is not None
        assert tracker.count("GET", f"/attachments/{attachment_id}") == 1
        event_types = [e.event_type for e in db.list_events(work_item_id=12)]
        assert "reconcile.restored" in event_types


class TestPullAttachment:
    """Tests for single attachment pulls."""

    @pytest.mark.asyncio
    async def test_pull_attachment(self, engine: SyncEngine, tracker: FakeTracker) -> None:
        attachment_id = tracker.add_remote_attachment(12, b"data", "data.txt")

        record = await engine.reconciler.pull_attachment(12, attachment_id)

        assert record.attachment_id == attachment_id
        assert record.work_item_id == 12

    @pytest.mark.asyncio
    async def test_pull_unknown_attachment(self, engine: SyncEngine, tracker: FakeTracker) -> None:
        tracker.add_remote_attachment(12, b"data", "data.txt")

        with pytest.raises(AttachmentNotFoundError):
            await engine.reconciler.pull_attachment(12, "not-there")
