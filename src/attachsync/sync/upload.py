"""Outbound upload orchestration.

This module provides:
- UploadOrchestrator: validates, deduplicates and uploads attachment
  content, choosing single-shot or chunked transfer by size
"""

from __future__ import annotations

import logging
import mimetypes
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from attachsync.core.hashing import compute_content_hash
from attachsync.core.types import AttachmentSource, EventSource, Severity, SyncStatus
from attachsync.remote.transport import TransportError
from attachsync.sync.dedup import DedupIndex
from attachsync.sync.types import (
    ChunkedUploadError,
    FileTooLargeError,
    UploadError,
    UploadResult,
    UploadValidationError,
)

if TYPE_CHECKING:
    from attachsync.core.config import SyncSettings
    from attachsync.remote.api import RemoteAttachment, WorkItemClient
    from attachsync.server.database import Database
    from attachsync.server.models import AttachmentRecord
    from attachsync.server.storage import AttachmentStorage
    from attachsync.sync.chunked import ChunkedTransfer

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """Uploads local content to the remote service exactly once per hash."""

    def __init__(
        self,
        db: Database,
        client: WorkItemClient,
        storage: AttachmentStorage,
        chunked: ChunkedTransfer,
        settings: SyncSettings,
        dedup: DedupIndex | None = None,
    ) -> None:
        self._db = db
        self._client = client
        self._storage = storage
        self._chunked = chunked
        self._settings = settings
        self._dedup = dedup or DedupIndex(db)

    def validate(self, data: bytes, file_name: str) -> None:
        """Reject content that must not reach the network.

        Raises:
            UploadValidationError: If the name or content is empty.
            FileTooLargeError: If the content exceeds max_file_size.
        """
        if not file_name or not file_name.strip():
            raise UploadValidationError("A file name is required")
        if not data:
            raise UploadValidationError("Cannot upload empty content")
        if len(data) > self._settings.max_file_size:
            raise FileTooLargeError(len(data), self._settings.max_file_size)

    async def upload(
        self,
        data: bytes,
        file_name: str,
        work_item_id: int | None = None,
        mime_type: str | None = None,
        source: EventSource = EventSource.API,
    ) -> UploadResult:
        """Upload content, or return the existing record for identical bytes.

        Linking to the work item is a separate step (see LinkBroker).

        Args:
            data: File content.
            file_name: File name to register remotely.
            work_item_id: Intended owner work item, if known.
            mime_type: Content type; guessed from the name when omitted.
            source: Who triggered the upload, for the event log.

        Returns:
            UploadResult with the PENDING (or pre-existing) record.

        Raises:
            UploadValidationError: On invalid input.
            UploadError: If the remote upload failed.
        """
        self.validate(data, file_name)
        file_name = file_name.strip()
        digest = compute_content_hash(data)

        async with self._dedup.lock(digest):
            existing = self._dedup.find_by_hash(digest)
            if existing is not None:
                return self._duplicate(existing, file_name, work_item_id, source)

            chunked = len(data) > self._settings.chunk_threshold
            try:
                remote, chunks_sent = await self._transfer(data, file_name, digest, work_item_id, chunked)
            except (TransportError, ChunkedUploadError) as e:
                self._db.record_event(
                    "upload.failed",
                    f"Upload of {file_name} failed: {e}",
                    severity=Severity.ERROR,
                    source=source,
                    work_item_id=work_item_id,
                    details={"sha256": digest, "size": len(data), "status_code": e.status_code},
                )
                if isinstance(e, UploadError):
                    raise
                raise UploadError(f"Upload of {file_name} failed: {e}", e.status_code) from e

            local_path = self._storage.put(digest, data)
            try:
                record = self._db.create_attachment(
                    attachment_id=remote.attachment_id,
                    sha256=digest,
                    file_name=file_name,
                    file_size=len(data),
                    remote_url=remote.url,
                    source=AttachmentSource.LOCAL,
                    sync_status=SyncStatus.PENDING,
                    work_item_id=work_item_id,
                    mime_type=mime_type or mimetypes.guess_type(file_name)[0],
                    local_path=local_path,
                )
            except IntegrityError:
                # Another writer persisted the same content first
                winner = self._db.get_attachment_by_hash(digest) or self._db.get_attachment(
                    remote.attachment_id
                )
                if winner is None:
                    raise
                logger.info(f"Concurrent insert for {digest[:12]}, using attachment {winner.attachment_id}")
                return UploadResult(
                    record=winner, is_duplicate=True, existing_work_item_id=winner.work_item_id
                )

        self._db.record_event(
            "upload.completed",
            f"Uploaded {file_name} ({len(data)} bytes)",
            source=source,
            work_item_id=work_item_id,
            attachment_id=record.attachment_id,
            details={"sha256": digest, "chunked": chunked, "chunks_sent": chunks_sent},
        )
        logger.info(f"Uploaded {file_name} as attachment {record.attachment_id}")
        return UploadResult(record=record, chunked=chunked, chunks_sent=chunks_sent)

    async def _transfer(
        self,
        data: bytes,
        file_name: str,
        digest: str,
        work_item_id: int | None,
        chunked: bool,
    ) -> tuple[RemoteAttachment, int]:
        if not chunked:
            return await self._client.upload_attachment(data, file_name), 0
        session, _ = self._chunked.resume_or_create(work_item_id, file_name, len(data), digest)
        return await self._chunked.transfer(session, data)

    def _duplicate(
        self,
        existing: AttachmentRecord,
        file_name: str,
        work_item_id: int | None,
        source: EventSource,
    ) -> UploadResult:
        self._db.record_event(
            "upload.duplicate",
            f"{file_name} matches existing attachment {existing.attachment_id}",
            source=source,
            work_item_id=work_item_id,
            attachment_id=existing.attachment_id,
            details={"sha256": existing.sha256, "existing_work_item_id": existing.work_item_id},
        )
        logger.info(f"Skipping upload of {file_name}: duplicate of {existing.attachment_id}")
        return UploadResult(
            record=existing,
            is_duplicate=True,
            existing_work_item_id=existing.work_item_id,
        )
