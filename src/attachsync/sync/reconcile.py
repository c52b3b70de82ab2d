"""Inbound reconciliation of remote attachments.

This module provides:
- InboundReconciler: diffs a work item's AttachedFile relations against
  local records, downloads what is missing (bounded concurrency), restores
  records whose relation came back and soft-deletes records no work item
  carries any more
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from attachsync.core.hashing import compute_content_hash
from attachsync.core.types import AttachmentSource, EventSource, Severity, SyncStatus
from attachsync.remote.transport import TransportError
from attachsync.sync.dedup import DedupIndex
from attachsync.sync.types import (
    AttachmentNotFoundError,
    ReconcileError,
    ReconcileItemError,
    ReconcileResult,
)

if TYPE_CHECKING:
    from attachsync.core.config import SyncSettings
    from attachsync.remote.api import RemoteAttachment, WorkItemClient
    from attachsync.server.database import Database
    from attachsync.server.models import AttachmentRecord
    from attachsync.server.storage import AttachmentStorage

logger = logging.getLogger(__name__)

ADDED = "added"
ALREADY_SYNCED = "already_synced"


class InboundReconciler:
    """Brings local attachment records in line with a remote work item."""

    def __init__(
        self,
        db: Database,
        client: WorkItemClient,
        storage: AttachmentStorage,
        settings: SyncSettings,
        dedup: DedupIndex | None = None,
    ) -> None:
        self._db = db
        self._client = client
        self._storage = storage
        self._settings = settings
        self._dedup = dedup or DedupIndex(db)

    async def _fetch_remote(
        self, work_item_id: int, source: EventSource
    ) -> list[RemoteAttachment]:
        try:
            return await self._client.get_attachment_relations(work_item_id)
        except TransportError as e:
            self._db.record_event(
                "reconcile.failed",
                f"Could not read attachments of work item {work_item_id}: {e}",
                severity=Severity.ERROR,
                source=source,
                work_item_id=work_item_id,
                details={"status_code": e.status_code},
            )
            raise ReconcileError(
                f"Failed to fetch relations of work item {work_item_id}: {e}", e.status_code
            ) from e

    async def reconcile(
        self, work_item_id: int, source: EventSource = EventSource.SYSTEM
    ) -> ReconcileResult:
        """Pull missing remote attachments of a work item.

        A failing download is reported in ``errors`` and does not stop the
        rest of the pass.

        Args:
            work_item_id: Work item to reconcile.
            source: Who triggered the pass, for the event log.

        Returns:
            ReconcileResult listing added, already synced, removed and
            failed attachment ids.

        Raises:
            ReconcileError: If the work item's relations could not be read.
        """
        remote = await self._fetch_remote(work_item_id, source)
        result = ReconcileResult(work_item_id=work_item_id)

        unique: dict[str, RemoteAttachment] = {}
        for attachment in remote:
            unique.setdefault(attachment.attachment_id, attachment)
        restorable = self._db.remotely_removed_ids(list(unique))
        known = self._db.known_attachment_ids(list(unique)) - restorable
        missing = [a for a in unique.values() if a.attachment_id not in known]
        for attachment_id in unique:
            if attachment_id in known:
                result.already_synced.append(attachment_id)
                self._remember_link(work_item_id, attachment_id)

        semaphore = asyncio.Semaphore(self._settings.download_concurrency)

        async def pull(attachment: RemoteAttachment) -> tuple[str, str | ReconcileItemError]:
            async with semaphore:
                try:
                    if attachment.attachment_id in restorable:
                        outcome, _ = await self._restore(
                            work_item_id, attachment.attachment_id, source
                        )
                    else:
                        outcome, _ = await self._pull(work_item_id, attachment, source)
                except Exception as e:
                    logger.exception(f"Failed to pull attachment {attachment.attachment_id}")
                    return attachment.attachment_id, self._item_error(
                        work_item_id, attachment, e, source
                    )
                return attachment.attachment_id, outcome

        for attachment_id, outcome in await asyncio.gather(*(pull(a) for a in missing)):
            if isinstance(outcome, ReconcileItemError):
                result.errors.append(outcome)
            elif outcome == ADDED:
                result.added.append(attachment_id)
            else:
                result.already_synced.append(attachment_id)

        if self._settings.detect_remote_deletions:
            result.removed = self._detect_deletions(work_item_id, set(unique), source)

        self._db.record_event(
            "reconcile.completed",
            f"Work item {work_item_id}: {len(result.added)} added, "
            f"{len(result.already_synced)} already synced, {len(result.removed)} removed, "
            f"{len(result.errors)} failed",
            severity=Severity.WARN if result.errors else Severity.INFO,
            source=source,
            work_item_id=work_item_id,
            details={
                "added": result.added,
                "removed": result.removed,
                "errors": [e.attachment_id for e in result.errors],
            },
        )
        logger.info(
            f"Reconciled work item {work_item_id}: +{len(result.added)} "
            f"={len(result.already_synced)} -{len(result.removed)} !{len(result.errors)}"
        )
        return result

    async def pull_attachment(
        self,
        work_item_id: int,
        attachment_id: str,
        source: EventSource = EventSource.SYSTEM,
    ) -> AttachmentRecord:
        """Pull one attachment of a work item, if not already known.

        Raises:
            AttachmentNotFoundError: If the work item has no such attachment.
            ReconcileError: If the work item's relations could not be read.
        """
        resolved = self._db.resolve_attachment_id(attachment_id)
        existing = self._db.get_attachment(resolved, include_deleted=True) if resolved else None
        if existing is not None and not existing.removed_remotely:
            return existing

        remote = await self._fetch_remote(work_item_id, source)
        match = next((a for a in remote if a.attachment_id == attachment_id), None)
        if match is None:
            raise AttachmentNotFoundError(
                f"Work item {work_item_id} has no attachment {attachment_id}"
            )
        if existing is not None:
            _, record = await self._restore(work_item_id, attachment_id, source)
        else:
            _, record = await self._pull(work_item_id, match, source)
        return record

    def _remember_link(self, work_item_id: int, remote_attachment_id: str) -> None:
        attachment_id = self._db.resolve_attachment_id(remote_attachment_id)
        if attachment_id is not None:
            self._db.add_link(work_item_id, remote_attachment_id, attachment_id)

    async def _pull(
        self,
        work_item_id: int,
        attachment: RemoteAttachment,
        source: EventSource,
    ) -> tuple[str, AttachmentRecord]:
        """Download, store and record one remote attachment.

        Returns:
            Tuple of (outcome, record). Content already held under another
            attachment id yields ALREADY_SYNCED with the existing record,
            and the remote id is linked to it so it is not downloaded again.
        """
        downloaded = await self._client.download_attachment(attachment.attachment_id)
        content = downloaded.content
        digest = compute_content_hash(content)
        file_name = attachment.file_name or downloaded.file_name or attachment.attachment_id

        async with self._dedup.lock(digest):
            existing = self._dedup.find_by_hash(digest)
            if existing is not None:
                self._db.add_link(work_item_id, attachment.attachment_id, existing.attachment_id)
                self._db.record_event(
                    "reconcile.duplicate_content",
                    f"{file_name} has the same content as attachment {existing.attachment_id}",
                    source=source,
                    work_item_id=work_item_id,
                    attachment_id=attachment.attachment_id,
                    details={"sha256": digest, "existing_attachment_id": existing.attachment_id},
                )
                return ALREADY_SYNCED, existing

            local_path = self._storage.put(digest, content)
            try:
                record = self._db.create_attachment(
                    attachment_id=attachment.attachment_id,
                    sha256=digest,
                    file_name=file_name,
                    file_size=len(content),
                    remote_url=attachment.url,
                    source=AttachmentSource.REMOTE,
                    sync_status=SyncStatus.SYNCED,
                    work_item_id=work_item_id,
                    mime_type=downloaded.content_type or mimetypes.guess_type(file_name)[0],
                    local_path=local_path,
                )
            except IntegrityError:
                winner = self._db.get_attachment(
                    attachment.attachment_id, include_deleted=True
                ) or self._db.get_attachment_by_hash(digest)
                if winner is None:
                    raise
                self._db.add_link(work_item_id, attachment.attachment_id, winner.attachment_id)
                return ALREADY_SYNCED, winner

        self._db.add_link(work_item_id, attachment.attachment_id, attachment.attachment_id)
        self._db.record_event(
            "reconcile.added",
            f"Downloaded {file_name} ({len(content)} bytes) from work item {work_item_id}",
            source=source,
            work_item_id=work_item_id,
            attachment_id=attachment.attachment_id,
            details={"sha256": digest},
        )
        return ADDED, record

    async def _restore(
        self, work_item_id: int, attachment_id: str, source: EventSource
    ) -> tuple[str, AttachmentRecord]:
        """Bring back a record removed earlier whose relation is present again.

        When another live record took over its content meanwhile, the id is
        linked to that record instead and ALREADY_SYNCED is returned.
        """
        removed = self._db.get_attachment(attachment_id, include_deleted=True)
        if removed is None:
            raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")

        async with self._dedup.lock(removed.sha256):
            record = self._db.restore_attachment(attachment_id)
            if record is None:
                live = self._dedup.find_by_hash(removed.sha256) or removed
                self._db.add_link(work_item_id, attachment_id, live.attachment_id)
                return ALREADY_SYNCED, live

        self._db.add_link(work_item_id, attachment_id, attachment_id)
        self._db.record_event(
            "reconcile.restored",
            f"{record.file_name} is attached to work item {work_item_id} again",
            source=source,
            work_item_id=work_item_id,
            attachment_id=attachment_id,
        )
        logger.info(f"Restored attachment {attachment_id} from work item {work_item_id}")
        return ADDED, record

    def _item_error(
        self,
        work_item_id: int,
        attachment: RemoteAttachment,
        error: Exception,
        source: EventSource,
    ) -> ReconcileItemError:
        status_code = getattr(error, "status_code", None)
        self._db.record_event(
            "reconcile.item_failed",
            f"Failed to pull {attachment.file_name or attachment.attachment_id}: {error}",
            severity=Severity.ERROR,
            source=source,
            work_item_id=work_item_id,
            attachment_id=attachment.attachment_id,
            details={"status_code": status_code},
        )
        return ReconcileItemError(
            attachment_id=attachment.attachment_id,
            message=str(error),
            status_code=status_code,
        )

    def _detect_deletions(
        self, work_item_id: int, remote_ids: set[str], source: EventSource
    ) -> list[str]:
        """Soft-delete SYNCED records no work item carries any more.

        Links of the work item whose relation is gone are dropped. A record
        is deleted only once no other work item links to it.
        """
        links = self._db.list_links(work_item_id)
        linked_ids = {link.attachment_id for link in links}
        candidates: list[str] = []
        for link in links:
            if link.remote_attachment_id in remote_ids:
                continue
            self._db.remove_link(work_item_id, link.remote_attachment_id)
            if link.attachment_id not in candidates:
                candidates.append(link.attachment_id)
        # Owned records that were never linked, e.g. stored before linking existed
        for record in self._db.list_attachments(work_item_id):
            if record.work_item_id != work_item_id or record.attachment_id in linked_ids:
                continue
            if record.attachment_id not in remote_ids and record.attachment_id not in candidates:
                candidates.append(record.attachment_id)

        removed = []
        for attachment_id in candidates:
            record = self._db.get_attachment(attachment_id)
            if record is None or record.sync_status != SyncStatus.SYNCED.value:
                continue
            if self._db.count_links(attachment_id):
                logger.info(
                    f"Attachment {attachment_id} left work item {work_item_id} "
                    "but is still linked elsewhere"
                )
                continue
            if self._db.soft_delete_attachment(attachment_id, removed_remotely=True):
                removed.append(attachment_id)
                self._db.record_event(
                    "reconcile.removed",
                    f"{record.file_name} was removed from work item {work_item_id}",
                    severity=Severity.WARN,
                    source=source,
                    work_item_id=work_item_id,
                    attachment_id=attachment_id,
                )
        return removed
