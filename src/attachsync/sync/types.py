"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and subclasses: Exception classes raised by sync components
- UploadResult, LinkResult: Outbound operation results
- ReconcileResult, ReconcileItemError: Inbound pass results
- IngestResult: Webhook ingestion outcome
- JobRunStats: Job queue drain statistics
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from attachsync.server.models import AttachmentRecord


class SyncError(Exception):
    """Base exception for sync errors."""


class UploadValidationError(SyncError):
    """Upload rejected before touching the network (empty content, no name)."""


class FileTooLargeError(UploadValidationError):
    """Content exceeds the configured maximum file size."""

    def __init__(self, size: int, max_size: int) -> None:
        self.size = size
        self.max_size = max_size
        super().__init__(f"File size {size} exceeds maximum of {max_size} bytes")


class UploadError(SyncError):
    """Failed to upload a file to the remote service.

    Attributes:
        status_code: HTTP status of the failing remote call, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChunkedUploadError(UploadError):
    """A chunked upload session failed."""


class ChunkOrderError(ChunkedUploadError):
    """A chunk was submitted ahead of the next expected index."""

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"Expected chunk {expected}, got chunk {received}")


class InvalidTransitionError(ChunkedUploadError):
    """Illegal upload session state transition."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move upload session from {current} to {target}")


class ContentIntegrityError(ChunkedUploadError):
    """Content hash does not match the hash declared for the session."""


class LinkError(SyncError):
    """Failed to attach an uploaded file to a work item."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReconcileError(SyncError):
    """A reconcile pass could not start (e.g. relations fetch failed)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AttachmentNotFoundError(SyncError):
    """No attachment record (or remote relation) for the given id."""


@dataclass
class UploadResult:
    """Result of an upload.

    ``is_duplicate`` is True when identical content was already uploaded;
    ``existing_work_item_id`` then names the work item that owns it.
    """

    record: AttachmentRecord
    is_duplicate: bool = False
    existing_work_item_id: int | None = None
    chunked: bool = False
    chunks_sent: int = 0


@dataclass
class LinkResult:
    """Result of linking an attachment to a work item."""

    work_item_id: int
    attachment_id: str
    already_linked: bool = False


@dataclass
class ReconcileItemError:
    """A single attachment that failed during a reconcile pass."""

    attachment_id: str
    message: str
    status_code: int | None = None


@dataclass
class ReconcileResult:
    """Outcome of reconciling one work item."""

    work_item_id: int
    added: list[str] = field(default_factory=list)
    already_synced: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[ReconcileItemError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True if no attachment failed."""
        return not self.errors


@dataclass
class IngestResult:
    """Outcome of ingesting a webhook notification."""

    accepted: bool
    reason: str | None = None
    event_type: str | None = None
    work_item_id: int | None = None
    job_id: int | None = None
    coalesced: bool = False


@dataclass
class JobRunStats:
    """Statistics of one job queue drain."""

    processed: int = 0
    succeeded: int = 0
    requeued: int = 0
    failed: int = 0
