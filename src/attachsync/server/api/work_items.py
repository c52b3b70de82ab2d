"""Work item attachment listing, reconcile and sync status API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from attachsync.remote.transport import TransportError
from attachsync.server.api.deps import get_db, get_engine, sync_http_error
from attachsync.server.database import Database
from attachsync.server.schemas import (
    AttachmentResponse,
    JobQueuedResponse,
    ReconcileResponse,
    SyncStatusResponse,
    attachment_to_response,
    event_to_response,
    job_to_response,
    reconcile_to_response,
)
from attachsync.sync.engine import SyncEngine
from attachsync.sync.types import SyncError

router = APIRouter(prefix="/api/work-items", tags=["work-items"])


@router.get("/{work_item_id}/attachments", response_model=list[AttachmentResponse])
def list_work_item_attachments(
    work_item_id: int,
    include_deleted: bool = False,
    db: Database = Depends(get_db),
) -> list[AttachmentResponse]:
    """List local attachment records of a work item."""
    records = db.list_attachments(work_item_id, include_deleted=include_deleted)
    return [attachment_to_response(r) for r in records]


@router.post(
    "/{work_item_id}/reconcile",
    response_model=ReconcileResponse | JobQueuedResponse,
)
async def reconcile_work_item(
    work_item_id: int,
    response: Response,
    background: bool = False,
    engine: SyncEngine = Depends(get_engine),
) -> ReconcileResponse | JobQueuedResponse:
    """Reconcile now, or queue a job and return 202 with ``background=true``."""
    if background:
        job, created = engine.enqueue_reconcile(work_item_id)
        response.status_code = status.HTTP_202_ACCEPTED
        return JobQueuedResponse(
            job_id=job.id,
            work_item_id=work_item_id,
            status=job.status,
            coalesced=not created,
        )
    try:
        result = await engine.reconcile(work_item_id)
    except (SyncError, TransportError) as e:
        raise sync_http_error(e) from e
    return reconcile_to_response(result)


@router.get("/{work_item_id}/sync-status", response_model=SyncStatusResponse)
def get_sync_status(
    work_item_id: int,
    limit: int = 10,
    db: Database = Depends(get_db),
) -> SyncStatusResponse:
    """Attachment counts plus recent jobs and events of a work item."""
    return SyncStatusResponse(
        work_item_id=work_item_id,
        summary=db.get_sync_summary(work_item_id),
        recent_jobs=[job_to_response(j) for j in db.list_jobs(work_item_id=work_item_id, limit=limit)],
        recent_events=[
            event_to_response(e) for e in db.list_events(work_item_id=work_item_id, limit=limit)
        ],
    )
