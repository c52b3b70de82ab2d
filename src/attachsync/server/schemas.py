"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from attachsync.remote.api import ConnectivityReport
from attachsync.server.models import AttachmentRecord, SyncEvent, SyncJob, UploadSession
from attachsync.sync.types import (
    IngestResult,
    JobRunStats,
    LinkResult,
    ReconcileResult,
    UploadResult,
)

# === Attachment schemas ===


class AttachmentResponse(BaseModel):
    """Attachment metadata in responses."""

    attachment_id: str
    work_item_id: int | None
    file_name: str
    file_size: int
    sha256: str
    mime_type: str | None
    source: str
    sync_status: str
    remote_url: str
    last_sync_error: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None


class LinkRequest(BaseModel):
    """Request body for linking an attachment to a work item."""

    work_item_id: int
    comment: str | None = None


class LinkResponse(BaseModel):
    """Result of a link operation."""

    work_item_id: int
    attachment_id: str
    already_linked: bool


class UploadResponse(BaseModel):
    """Result of an upload, optionally followed by a link."""

    status: str  # "uploaded", "uploaded_and_linked" or "duplicate"
    attachment: AttachmentResponse
    is_duplicate: bool
    existing_work_item_id: int | None
    chunked: bool
    chunks_sent: int
    link: LinkResponse | None = None


class DedupResponse(BaseModel):
    """Dedup lookup result."""

    sha256: str
    exists: bool
    attachment: AttachmentResponse | None = None


# === Reconcile schemas ===


class ReconcileItemErrorResponse(BaseModel):
    attachment_id: str
    message: str
    status_code: int | None


class ReconcileResponse(BaseModel):
    """Outcome of a reconcile pass."""

    work_item_id: int
    added: list[str]
    already_synced: list[str]
    removed: list[str]
    errors: list[ReconcileItemErrorResponse]


class JobQueuedResponse(BaseModel):
    """Response when work was queued instead of executed."""

    job_id: int
    work_item_id: int
    status: str
    coalesced: bool


# === Job and event schemas ===


class JobResponse(BaseModel):
    """Sync job in responses."""

    id: int
    work_item_id: int
    attachment_id: str | None
    job_type: str
    status: str
    priority: int
    retry_count: int
    max_retries: int
    error_message: str | None
    created_at: str
    started_at: str | None
    completed_at: str | None


class JobRunResponse(BaseModel):
    """Statistics of one queue drain."""

    processed: int
    succeeded: int
    requeued: int
    failed: int


class EventResponse(BaseModel):
    """Sync event in responses."""

    id: int
    event_type: str
    work_item_id: int | None
    attachment_id: str | None
    message: str
    severity: str
    source: str
    details: dict[str, Any] | None
    occurred_at: str


class SyncStatusResponse(BaseModel):
    """Sync overview of one work item."""

    work_item_id: int
    summary: dict[str, int]
    recent_jobs: list[JobResponse]
    recent_events: list[EventResponse]


# === Upload session schemas ===


class UploadSessionResponse(BaseModel):
    """Chunked upload progress."""

    session_id: str
    work_item_id: int | None
    file_name: str
    total_size: int
    chunk_size: int
    total_chunks: int
    chunks_acknowledged: int
    progress: float
    state: str
    created_at: str
    expires_at: str


# === Webhook schemas ===


class WebhookResponse(BaseModel):
    """Webhook acknowledgement."""

    accepted: bool
    event_type: str | None
    work_item_id: int | None
    job_id: int | None
    coalesced: bool


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


class DiagnoseResponse(BaseModel):
    """Connectivity check against the remote service."""

    success: bool
    org_url: str
    project: str
    api_version: str
    http_status: int | None
    message: str
    guidance: str
    possible_causes: list[str]


# === Converters ===


def _iso(value: Any) -> str | None:
    return value.isoformat() if value else None


def attachment_to_response(record: AttachmentRecord) -> AttachmentResponse:
    """Convert AttachmentRecord to response model."""
    return AttachmentResponse(
        attachment_id=record.attachment_id,
        work_item_id=record.work_item_id,
        file_name=record.file_name,
        file_size=record.file_size,
        sha256=record.sha256,
        mime_type=record.mime_type,
        source=record.source,
        sync_status=record.sync_status,
        remote_url=record.remote_url,
        last_sync_error=record.last_sync_error,
        created_at=record.created_at.isoformat(),
        updated_at=record.updated_at.isoformat(),
        deleted_at=_iso(record.deleted_at),
    )


def link_to_response(result: LinkResult) -> LinkResponse:
    """Convert LinkResult to response model."""
    return LinkResponse(
        work_item_id=result.work_item_id,
        attachment_id=result.attachment_id,
        already_linked=result.already_linked,
    )


def upload_to_response(result: UploadResult, link: LinkResult | None = None) -> UploadResponse:
    """Convert an upload (and optional link) result to response model."""
    if link is not None:
        status = "uploaded_and_linked"
    elif result.is_duplicate:
        status = "duplicate"
    else:
        status = "uploaded"
    return UploadResponse(
        status=status,
        attachment=attachment_to_response(result.record),
        is_duplicate=result.is_duplicate,
        existing_work_item_id=result.existing_work_item_id,
        chunked=result.chunked,
        chunks_sent=result.chunks_sent,
        link=link_to_response(link) if link else None,
    )


def reconcile_to_response(result: ReconcileResult) -> ReconcileResponse:
    """Convert ReconcileResult to response model."""
    return ReconcileResponse(
        work_item_id=result.work_item_id,
        added=result.added,
        already_synced=result.already_synced,
        removed=result.removed,
        errors=[
            ReconcileItemErrorResponse(
                attachment_id=e.attachment_id, message=e.message, status_code=e.status_code
            )
            for e in result.errors
        ],
    )


def job_to_response(job: SyncJob) -> JobResponse:
    """Convert SyncJob to response model."""
    return JobResponse(
        id=job.id,
        work_item_id=job.work_item_id,
        attachment_id=job.attachment_id,
        job_type=job.job_type,
        status=job.status,
        priority=job.priority,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        error_message=job.error_message,
        created_at=job.created_at.isoformat(),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
    )


def job_run_to_response(stats: JobRunStats) -> JobRunResponse:
    """Convert JobRunStats to response model."""
    return JobRunResponse(
        processed=stats.processed,
        succeeded=stats.succeeded,
        requeued=stats.requeued,
        failed=stats.failed,
    )


def event_to_response(event: SyncEvent) -> EventResponse:
    """Convert SyncEvent to response model."""
    return EventResponse(
        id=event.id,
        event_type=event.event_type,
        work_item_id=event.work_item_id,
        attachment_id=event.attachment_id,
        message=event.message,
        severity=event.severity,
        source=event.source,
        details=event.details,
        occurred_at=event.occurred_at.isoformat(),
    )


def session_to_response(session: UploadSession) -> UploadSessionResponse:
    """Convert UploadSession to response model."""
    return UploadSessionResponse(
        session_id=session.session_id,
        work_item_id=session.work_item_id,
        file_name=session.file_name,
        total_size=session.total_size,
        chunk_size=session.chunk_size,
        total_chunks=session.total_chunks,
        chunks_acknowledged=session.chunks_acknowledged,
        progress=session.progress,
        state=session.state,
        created_at=session.created_at.isoformat(),
        expires_at=session.expires_at.isoformat(),
    )


def ingest_to_response(result: IngestResult) -> WebhookResponse:
    """Convert an accepted IngestResult to response model."""
    return WebhookResponse(
        accepted=result.accepted,
        event_type=result.event_type,
        work_item_id=result.work_item_id,
        job_id=result.job_id,
        coalesced=result.coalesced,
    )


def diagnose_to_response(report: ConnectivityReport) -> DiagnoseResponse:
    return DiagnoseResponse(
        success=report.ok,
        org_url=report.org_url,
        project=report.project,
        api_version=report.api_version,
        http_status=report.status_code,
        message=report.message,
        guidance=report.guidance,
        possible_causes=report.possible_causes,
    )
