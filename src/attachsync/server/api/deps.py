"""FastAPI dependencies and error mapping for API routes."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from attachsync.remote.transport import RemoteStatusError, RetriesExhaustedError, TransportError
from attachsync.server.database import Database
from attachsync.server.storage import AttachmentStorage
from attachsync.sync.engine import SyncEngine
from attachsync.sync.types import (
    AttachmentNotFoundError,
    ContentIntegrityError,
    FileTooLargeError,
    LinkError,
    ReconcileError,
    SyncError,
    UploadError,
    UploadValidationError,
)

# Upstream statuses passed through to the caller as-is
PASSTHROUGH_STATUS_CODES = frozenset({401, 403})


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_storage(request: Request) -> AttachmentStorage:
    """Get attachment storage from app state."""
    storage: AttachmentStorage = request.app.state.storage
    return storage


def get_engine(request: Request) -> SyncEngine:
    """Get the sync engine from app state."""
    engine: SyncEngine | None = request.app.state.engine
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Remote service not configured",
        )
    return engine


def _remote_status(status_code: int | None) -> int:
    if status_code is not None and status_code in PASSTHROUGH_STATUS_CODES:
        return status_code
    return status.HTTP_502_BAD_GATEWAY


def sync_http_error(error: Exception) -> HTTPException:
    """Translate a sync or transport error into an HTTPException."""
    if isinstance(error, FileTooLargeError):
        return HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(error))
    if isinstance(error, UploadValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, AttachmentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ContentIntegrityError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))

    cause = error.__cause__ if isinstance(error, SyncError) else error
    if isinstance(cause, RetriesExhaustedError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Remote service unreachable: {error}",
        )
    if isinstance(cause, RemoteStatusError):
        return HTTPException(
            status_code=_remote_status(cause.status_code),
            detail=cause.guidance or str(error),
        )
    if isinstance(error, (UploadError, LinkError, ReconcileError, TransportError)):
        return HTTPException(
            status_code=_remote_status(error.status_code),
            detail=str(error),
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
