"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from attachsync.server.api import (
    attachments,
    diagnose,
    health,
    jobs,
    sessions,
    webhooks,
    work_items,
)

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(attachments.router)
router.include_router(work_items.router)
router.include_router(sessions.router)
router.include_router(jobs.router)
router.include_router(webhooks.router)
router.include_router(diagnose.router)
