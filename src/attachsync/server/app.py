"""FastAPI application for the attachsync service.

This module creates and configures the FastAPI application with:
- REST API for attachment upload, linking, content and dedup lookups
- Work item reconcile and sync status endpoints
- Webhook receiver for remote change notifications
- Background scheduler for the job queue and maintenance

Usage:
    uvicorn attachsync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from attachsync import __version__
from attachsync.core.config import RemoteConfig, SyncSettings
from attachsync.server.api.router import router as api_router
from attachsync.server.database import Database
from attachsync.server.scheduler import SyncScheduler
from attachsync.server.storage import AttachmentStorage, create_storage
from attachsync.sync.engine import SyncEngine

# Configuration from environment variables with defaults
DB_PATH = Path(os.environ.get("ATTACHSYNC_DB_PATH", "attachsync.db"))
LOG_PATH = Path(os.environ.get("ATTACHSYNC_LOG_PATH", "attachsync.log"))
EVENT_RETENTION_DAYS = int(os.environ.get("ATTACHSYNC_EVENT_RETENTION_DAYS", "30"))


def build_storage_config() -> dict[str, str | None]:
    """Build storage configuration from environment variables."""
    # S3 storage if bucket is configured
    s3_bucket = os.environ.get("ATTACHSYNC_S3_BUCKET")
    if s3_bucket:
        return {
            "type": "s3",
            "bucket": s3_bucket,
            "endpoint_url": os.environ.get("ATTACHSYNC_S3_ENDPOINT"),
            "access_key": os.environ.get("ATTACHSYNC_S3_ACCESS_KEY"),
            "secret_key": os.environ.get("ATTACHSYNC_S3_SECRET_KEY"),
            "region": os.environ.get("ATTACHSYNC_S3_REGION", "us-east-1"),
        }

    # Local storage (default)
    return {
        "type": "local",
        "local_path": os.environ.get("ATTACHSYNC_STORAGE_PATH", "attachments"),
    }


def setup_logging(log_path: Path, level: int = logging.INFO) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
        level: Level of the attachsync root logger.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for attachsync
    root_logger = logging.getLogger("attachsync")
    root_logger.setLevel(level)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


logger = logging.getLogger(__name__)


def create_app(
    db: Database,
    storage: AttachmentStorage,
    engine: SyncEngine | None = None,
    scheduler: SyncScheduler | None = None,
) -> FastAPI:
    """Create FastAPI application with the given store and engine.

    Args:
        db: Database instance.
        storage: Attachment blob storage.
        engine: Sync engine. Without one, remote-backed routes answer 503.
        scheduler: Optional scheduler started and stopped with the app.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info("=" * 60)
        logger.info("attachsync Service Starting")
        logger.info("=" * 60)
        logger.info("  Database: %s", db.path)
        logger.info("  Storage:  %s", storage.location)
        if engine is not None:
            logger.info("  Remote:   %s", engine.client.config.project_url)
        else:
            logger.info("  Remote:   None (sync disabled)")
        logger.info("=" * 60)
        if scheduler is not None:
            scheduler.start()

        yield

        # Shutdown
        if scheduler is not None:
            scheduler.stop()
        if engine is not None:
            await engine.aclose()
        logger.info("attachsync service shutting down")

    application = FastAPI(
        title="attachsync",
        description="Attachment synchronization between a test tool and a work-item tracker",
        version=__version__,
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.storage = storage
    application.state.engine = engine

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode.

    Raises:
        ConfigError: If the remote service settings are missing.
    """
    setup_logging(LOG_PATH)
    db = Database(DB_PATH)
    storage = create_storage(build_storage_config())
    settings = SyncSettings.from_env()
    engine = SyncEngine.create(db, storage, RemoteConfig.from_env(), settings)
    scheduler = SyncScheduler(
        engine,
        job_interval_seconds=settings.job_poll_seconds,
        retention_days=EVENT_RETENTION_DAYS,
    )
    return create_app(db, storage, engine, scheduler)
