"""Attachment synchronization engine.

SyncEngine wires the sync components around one metadata store, one blob
store and one remote client, and is the single entry point used by the
HTTP service, the scheduler and the CLI.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from attachsync.core.hashing import compute_content_hash
from attachsync.core.types import EventSource, JobType, Severity
from attachsync.remote.api import WorkItemClient
from attachsync.remote.transport import TransportExecutor
from attachsync.server.storage import BlobNotFoundError
from attachsync.sync.chunked import ChunkedTransfer
from attachsync.sync.dedup import DedupIndex, KeyedLock
from attachsync.sync.jobs import SyncJobRunner
from attachsync.sync.link import LinkBroker
from attachsync.sync.reconcile import InboundReconciler
from attachsync.sync.types import (
    AttachmentNotFoundError,
    ContentIntegrityError,
    IngestResult,
    JobRunStats,
    LinkResult,
    ReconcileResult,
    UploadResult,
)
from attachsync.sync.upload import UploadOrchestrator
from attachsync.sync.webhook import WebhookIngestor

if TYPE_CHECKING:
    import httpx

    from attachsync.core.config import RemoteConfig, SyncSettings
    from attachsync.server.database import Database
    from attachsync.server.models import AttachmentRecord, SyncJob
    from attachsync.server.storage import AttachmentStorage

logger = logging.getLogger(__name__)


class SyncEngine:
    """Bidirectional attachment sync between the local store and a remote tracker."""

    def __init__(
        self,
        db: Database,
        storage: AttachmentStorage,
        client: WorkItemClient,
        settings: SyncSettings,
    ) -> None:
        self.db = db
        self.storage = storage
        self.client = client
        self.settings = settings

        self.dedup = DedupIndex(db, KeyedLock())
        self.chunked = ChunkedTransfer(db, client, settings)
        self.uploader = UploadOrchestrator(db, client, storage, self.chunked, settings, self.dedup)
        self.linker = LinkBroker(db, client)
        self.reconciler = InboundReconciler(db, client, storage, settings, self.dedup)
        self.webhooks = WebhookIngestor(db, settings.webhook_secret, settings.job_max_retries)
        self.jobs = SyncJobRunner(db, self.reconciler)

    @classmethod
    def create(
        cls,
        db: Database,
        storage: AttachmentStorage,
        remote: RemoteConfig,
        settings: SyncSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> SyncEngine:
        """Build an engine with a retrying client for ``remote``."""
        executor = TransportExecutor(
            max_retries=settings.max_retries,
            base_delay=settings.retry_backoff,
            max_delay=settings.max_backoff,
        )
        client = WorkItemClient(remote, executor=executor, transport=transport)
        return cls(db, storage, client, settings)

    async def aclose(self) -> None:
        """Close the remote client."""
        await self.client.aclose()

    # === Outbound ===

    async def upload(
        self,
        data: bytes,
        file_name: str,
        work_item_id: int | None = None,
        source: EventSource = EventSource.API,
    ) -> UploadResult:
        """Upload content without linking it (see UploadOrchestrator.upload)."""
        return await self.uploader.upload(data, file_name, work_item_id, source=source)

    async def upload_and_link(
        self,
        data: bytes,
        file_name: str,
        work_item_id: int,
        comment: str | None = None,
        source: EventSource = EventSource.API,
    ) -> tuple[UploadResult, LinkResult]:
        """Upload content and attach it to a work item.

        Duplicate content is linked using the existing record, so the
        relation is added at most once per work item.
        """
        result = await self.uploader.upload(data, file_name, work_item_id, source=source)
        link = await self.linker.link(work_item_id, result.record, comment, source=source)
        refreshed = self.db.get_attachment(result.record.attachment_id)
        if refreshed is not None:
            result.record = refreshed
        return result, link

    def get_attachment(self, attachment_id: str) -> AttachmentRecord:
        """Return a live attachment record.

        Raises:
            AttachmentNotFoundError: If no live record exists.
        """
        record = self.db.get_attachment(attachment_id)
        if record is None:
            raise AttachmentNotFoundError(f"Attachment not found: {attachment_id}")
        return record

    async def link(
        self,
        attachment_id: str,
        work_item_id: int,
        comment: str | None = None,
        source: EventSource = EventSource.API,
    ) -> LinkResult:
        """Link a previously uploaded attachment to a work item."""
        record = self.get_attachment(attachment_id)
        return await self.linker.link(work_item_id, record, comment, source=source)

    # === Inbound ===

    async def reconcile(
        self, work_item_id: int, source: EventSource = EventSource.API
    ) -> ReconcileResult:
        """Reconcile one work item now."""
        return await self.reconciler.reconcile(work_item_id, source=source)

    def enqueue_reconcile(
        self, work_item_id: int, priority: int = 5, source: EventSource = EventSource.API
    ) -> tuple[SyncJob, bool]:
        """Queue a reconcile job for the job runner.

        Returns:
            Tuple of (job, created), see Database.enqueue_job.
        """
        job, created = self.db.enqueue_job(
            work_item_id,
            JobType.RECONCILE,
            priority=priority,
            max_retries=self.settings.job_max_retries,
        )
        self.db.record_event(
            "reconcile.queued",
            f"Reconcile of work item {work_item_id} queued as job {job.id}",
            source=source,
            work_item_id=work_item_id,
            details={"job_id": job.id, "coalesced": not created},
        )
        return job, created

    def ingest_webhook(self, raw_payload: bytes, signature: str | None) -> IngestResult:
        """Validate a webhook notification and queue work for it."""
        return self.webhooks.ingest(raw_payload, signature)

    async def run_jobs(self, limit: int | None = None) -> JobRunStats:
        """Drain up to ``limit`` queued jobs (default: job_batch_size)."""
        return await self.jobs.run_pending(limit or self.settings.job_batch_size)

    # === Content and maintenance ===

    async def get_content(self, attachment_id: str) -> tuple[AttachmentRecord, bytes]:
        """Return attachment bytes, re-fetching them if the local copy is gone.

        Raises:
            AttachmentNotFoundError: If no live record exists.
            ContentIntegrityError: If re-fetched bytes do not match the record.
        """
        record = self.get_attachment(attachment_id)
        try:
            return record, self.storage.get(record.sha256)
        except BlobNotFoundError:
            logger.info(f"Local copy of {attachment_id} missing, downloading")

        downloaded = await self.client.download_attachment(attachment_id)
        if compute_content_hash(downloaded.content) != record.sha256:
            self.db.record_event(
                "content.mismatch",
                f"Downloaded content of {attachment_id} does not match its recorded hash",
                severity=Severity.ERROR,
                work_item_id=record.work_item_id,
                attachment_id=attachment_id,
            )
            raise ContentIntegrityError(f"Content of {attachment_id} changed remotely")
        self.storage.put(record.sha256, downloaded.content)
        return record, downloaded.content

    def delete_attachment(self, attachment_id: str, source: EventSource = EventSource.API) -> None:
        """Soft-delete a local attachment record.

        Raises:
            AttachmentNotFoundError: If no live record exists.
        """
        record = self.get_attachment(attachment_id)
        self.db.soft_delete_attachment(attachment_id)
        self.db.record_event(
            "attachment.deleted",
            f"{record.file_name} deleted locally",
            severity=Severity.WARN,
            source=source,
            work_item_id=record.work_item_id,
            attachment_id=attachment_id,
        )

    def abandon_session(self, session_id: str) -> bool:
        """Cancel a chunked upload session."""
        return self.chunked.abandon(session_id)

    def cleanup_expired_sessions(self) -> int:
        """Purge expired chunked upload sessions."""
        count = self.db.cleanup_expired_sessions()
        if count:
            self.db.record_event("sessions.expired", f"Purged {count} expired upload session(s)")
        return count
