"""Idempotent linking of uploaded attachments to work items."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from attachsync.core.types import EventSource, Severity, SyncStatus
from attachsync.remote.api import ATTACHED_FILE_REL, extract_attachment_id
from attachsync.remote.transport import TransportError
from attachsync.sync.types import LinkError, LinkResult

if TYPE_CHECKING:
    from attachsync.remote.api import RemoteRelation, WorkItemClient
    from attachsync.server.database import Database
    from attachsync.server.models import AttachmentRecord

logger = logging.getLogger(__name__)


def default_comment() -> str:
    return f"Added by attachsync ({datetime.now(UTC).isoformat(timespec='seconds')})"


def is_already_linked(relations: list[RemoteRelation], record: AttachmentRecord) -> bool:
    """Check whether any AttachedFile relation points at the record.

    URLs are compared case-insensitively; a relation carrying the same
    attachment id also counts.
    """
    target_url = record.remote_url.lower()
    target_id = record.attachment_id.lower()
    for relation in relations:
        if relation.rel != ATTACHED_FILE_REL:
            continue
        if relation.url.lower() == target_url:
            return True
        relation_id = extract_attachment_id(relation.url)
        if relation_id is not None and relation_id.lower() == target_id:
            return True
    return False


class LinkBroker:
    """Adds AttachedFile relations, never twice for the same attachment."""

    def __init__(self, db: Database, client: WorkItemClient) -> None:
        self._db = db
        self._client = client

    async def link(
        self,
        work_item_id: int,
        record: AttachmentRecord,
        comment: str | None = None,
        source: EventSource = EventSource.API,
    ) -> LinkResult:
        """Attach an uploaded file to a work item.

        On success the record becomes SYNCED and, if it had no owner yet,
        is assigned to ``work_item_id``. On failure only the error is stored
        and the sync status is left as it was.

        Args:
            work_item_id: Target work item.
            record: Attachment to link.
            comment: Relation comment (defaults to a timestamped note).
            source: Who triggered the link, for the event log.

        Returns:
            LinkResult; ``already_linked`` is True when no patch was sent.

        Raises:
            LinkError: If the relations fetch or the patch failed.
        """
        try:
            relations = await self._client.get_relations(work_item_id)
            already_linked = is_already_linked(relations, record)
            if not already_linked:
                await self._client.add_attachment_relation(
                    work_item_id,
                    record.remote_url,
                    record.file_name,
                    comment or default_comment(),
                )
        except TransportError as e:
            self._db.set_attachment_error(record.attachment_id, str(e))
            self._db.record_event(
                "link.failed",
                f"Linking {record.file_name} to work item {work_item_id} failed: {e}",
                severity=Severity.ERROR,
                source=source,
                work_item_id=work_item_id,
                attachment_id=record.attachment_id,
                details={"status_code": e.status_code},
            )
            raise LinkError(
                f"Failed to link attachment {record.attachment_id} to work item {work_item_id}: {e}",
                e.status_code,
            ) from e

        self._db.update_attachment_status(
            record.attachment_id, SyncStatus.SYNCED, work_item_id=work_item_id
        )
        self._db.add_link(work_item_id, record.attachment_id, record.attachment_id)
        if already_linked:
            logger.info(f"Attachment {record.attachment_id} already linked to {work_item_id}")
            self._db.record_event(
                "link.skipped",
                f"{record.file_name} is already attached to work item {work_item_id}",
                source=source,
                work_item_id=work_item_id,
                attachment_id=record.attachment_id,
            )
        else:
            logger.info(f"Linked attachment {record.attachment_id} to work item {work_item_id}")
            self._db.record_event(
                "link.completed",
                f"Attached {record.file_name} to work item {work_item_id}",
                source=source,
                work_item_id=work_item_id,
                attachment_id=record.attachment_id,
            )
        return LinkResult(
            work_item_id=work_item_id,
            attachment_id=record.attachment_id,
            already_linked=already_linked,
        )
