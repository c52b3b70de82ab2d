"""Sync module - Attachment synchronization engine.

This module provides:
- Outbound: UploadOrchestrator, ChunkedTransfer, LinkBroker
- Inbound: InboundReconciler, WebhookIngestor, SyncJobRunner
- Dedup: DedupIndex, KeyedLock
- Facade: SyncEngine
- Types: Result dataclasses and SyncError hierarchy
"""

from attachsync.sync.chunked import ChunkedTransfer
from attachsync.sync.dedup import DedupIndex, KeyedLock
from attachsync.sync.engine import SyncEngine
from attachsync.sync.jobs import SyncJobRunner
from attachsync.sync.link import LinkBroker
from attachsync.sync.reconcile import InboundReconciler
from attachsync.sync.types import (
    AttachmentNotFoundError,
    ChunkedUploadError,
    ChunkOrderError,
    ContentIntegrityError,
    FileTooLargeError,
    IngestResult,
    InvalidTransitionError,
    JobRunStats,
    LinkError,
    LinkResult,
    ReconcileError,
    ReconcileItemError,
    ReconcileResult,
    SyncError,
    UploadError,
    UploadResult,
    UploadValidationError,
)
from attachsync.sync.upload import UploadOrchestrator
from attachsync.sync.webhook import WebhookIngestor

__all__ = [
    # Components
    "ChunkedTransfer",
    "DedupIndex",
    "InboundReconciler",
    "KeyedLock",
    "LinkBroker",
    "SyncEngine",
    "SyncJobRunner",
    "UploadOrchestrator",
    "WebhookIngestor",
    # Results
    "IngestResult",
    "JobRunStats",
    "LinkResult",
    "ReconcileItemError",
    "ReconcileResult",
    "UploadResult",
    # Errors
    "AttachmentNotFoundError",
    "ChunkedUploadError",
    "ChunkOrderError",
    "ContentIntegrityError",
    "FileTooLargeError",
    "InvalidTransitionError",
    "LinkError",
    "ReconcileError",
    "SyncError",
    "UploadError",
    "UploadValidationError",
]
