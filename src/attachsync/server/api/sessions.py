"""Chunked upload session API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from attachsync.server.api.deps import get_db, get_engine
from attachsync.server.database import Database
from attachsync.server.schemas import UploadSessionResponse, session_to_response
from attachsync.sync.engine import SyncEngine

router = APIRouter(prefix="/api/upload-sessions", tags=["upload-sessions"])


@router.get("", response_model=list[UploadSessionResponse])
def list_upload_sessions(db: Database = Depends(get_db)) -> list[UploadSessionResponse]:
    """List open upload sessions."""
    return [session_to_response(s) for s in db.list_upload_sessions()]


@router.get("/{session_id}", response_model=UploadSessionResponse)
def get_upload_session(
    session_id: str,
    db: Database = Depends(get_db),
) -> UploadSessionResponse:
    """Get progress of a chunked upload."""
    session = db.get_upload_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Upload session not found: {session_id}",
        )
    return session_to_response(session)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def abandon_upload_session(
    session_id: str,
    engine: SyncEngine = Depends(get_engine),
) -> Response:
    """Cancel a chunked upload and delete its state."""
    if not engine.abandon_session(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Upload session not found: {session_id}",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
