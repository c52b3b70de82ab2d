"""Core module - Shared configuration, hashing, and enums."""

from attachsync.core.config import ConfigError, RemoteConfig, SyncSettings
from attachsync.core.hashing import (
    ByteRange,
    chunk_range,
    compute_content_hash,
    count_chunks,
    iter_chunk_ranges,
)
from attachsync.core.types import (
    AttachmentSource,
    EventSource,
    JobStatus,
    JobType,
    SessionState,
    Severity,
    SyncStatus,
)

__all__ = [
    # Config
    "ConfigError",
    "RemoteConfig",
    "SyncSettings",
    # Hashing
    "ByteRange",
    "chunk_range",
    "compute_content_hash",
    "count_chunks",
    "iter_chunk_ranges",
    # Types
    "AttachmentSource",
    "EventSource",
    "JobStatus",
    "JobType",
    "SessionState",
    "Severity",
    "SyncStatus",
]
