"""Attachment upload, link, content and dedup API routes."""

from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from attachsync.core.hashing import is_content_hash
from attachsync.remote.transport import TransportError
from attachsync.server.api.deps import get_db, get_engine, sync_http_error
from attachsync.server.database import Database
from attachsync.server.schemas import (
    AttachmentResponse,
    DedupResponse,
    LinkRequest,
    LinkResponse,
    UploadResponse,
    attachment_to_response,
    link_to_response,
    upload_to_response,
)
from attachsync.sync.engine import SyncEngine
from attachsync.sync.types import SyncError

router = APIRouter(prefix="/api", tags=["attachments"])


@router.post(
    "/attachments",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    request: Request,
    file_name: str,
    work_item_id: int | None = None,
    comment: str | None = None,
    engine: SyncEngine = Depends(get_engine),
) -> UploadResponse:
    """Upload raw request body as an attachment.

    With ``work_item_id`` the attachment is also linked to that work item.
    """
    data = await request.body()
    try:
        if work_item_id is None:
            result = await engine.upload(data, file_name)
            return upload_to_response(result)
        result, link = await engine.upload_and_link(data, file_name, work_item_id, comment)
        return upload_to_response(result, link)
    except (SyncError, TransportError) as e:
        raise sync_http_error(e) from e


@router.post("/attachments/{attachment_id}/link", response_model=LinkResponse)
async def link_attachment(
    attachment_id: str,
    body: LinkRequest,
    engine: SyncEngine = Depends(get_engine),
) -> LinkResponse:
    """Link an uploaded attachment to a work item (idempotent)."""
    try:
        result = await engine.link(attachment_id, body.work_item_id, body.comment)
    except (SyncError, TransportError) as e:
        raise sync_http_error(e) from e
    return link_to_response(result)


@router.get("/attachments/{attachment_id}", response_model=AttachmentResponse)
def get_attachment(
    attachment_id: str,
    db: Database = Depends(get_db),
) -> AttachmentResponse:
    """Get attachment metadata."""
    record = db.get_attachment(attachment_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Attachment not found: {attachment_id}",
        )
    return attachment_to_response(record)


@router.get("/attachments/{attachment_id}/content")
async def get_attachment_content(
    attachment_id: str,
    engine: SyncEngine = Depends(get_engine),
) -> Response:
    """Download attachment bytes."""
    try:
        record, content = await engine.get_content(attachment_id)
    except (SyncError, TransportError) as e:
        raise sync_http_error(e) from e
    return Response(
        content=content,
        media_type=record.mime_type or "application/octet-stream",
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(record.file_name)}",
            "X-Content-SHA256": record.sha256,
        },
    )


@router.delete("/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_attachment(
    attachment_id: str,
    engine: SyncEngine = Depends(get_engine),
) -> Response:
    """Soft-delete an attachment record. The remote relation is left untouched."""
    try:
        engine.delete_attachment(attachment_id)
    except SyncError as e:
        raise sync_http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/dedup/{sha256}", response_model=DedupResponse)
def check_duplicate(
    sha256: str,
    db: Database = Depends(get_db),
) -> DedupResponse:
    """Check whether content with this hash was already uploaded."""
    digest = sha256.lower()
    if not is_content_hash(digest):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Expected a 64-character hex SHA-256 digest",
        )
    record = db.get_attachment_by_hash(digest)
    return DedupResponse(
        sha256=digest,
        exists=record is not None,
        attachment=attachment_to_response(record) if record else None,
    )
