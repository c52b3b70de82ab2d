"""Sync job queue API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from attachsync.core.types import JobStatus
from attachsync.server.api.deps import get_db, get_engine
from attachsync.server.database import Database
from attachsync.server.schemas import (
    JobResponse,
    JobRunResponse,
    job_run_to_response,
    job_to_response,
)
from attachsync.sync.engine import SyncEngine

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("", response_model=list[JobResponse])
def list_jobs(
    work_item_id: int | None = None,
    job_status: JobStatus | None = None,
    limit: int = 50,
    db: Database = Depends(get_db),
) -> list[JobResponse]:
    """List sync jobs, newest first."""
    jobs = db.list_jobs(work_item_id=work_item_id, status=job_status, limit=limit)
    return [job_to_response(j) for j in jobs]


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: int, db: Database = Depends(get_db)) -> JobResponse:
    """Get one job."""
    job = db.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )
    return job_to_response(job)


@router.post("/run", response_model=JobRunResponse)
async def run_jobs(
    limit: int | None = None,
    engine: SyncEngine = Depends(get_engine),
) -> JobRunResponse:
    """Drain the queue once."""
    stats = await engine.run_jobs(limit)
    return job_run_to_response(stats)
