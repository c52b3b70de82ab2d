"""Shared types for attachsync.

This module defines the enums persisted by the metadata store and used
by the sync engine.
"""

from __future__ import annotations

from enum import Enum


class AttachmentSource(str, Enum):
    """Where an attachment record originated."""

    LOCAL = "LOCAL"
    REMOTE = "REMOTE"


class SyncStatus(str, Enum):
    """Sync status of an attachment record."""

    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SessionState(str, Enum):
    """State of a chunked upload session.

    CREATED -> TRANSFERRING -> FINALIZING -> COMPLETE, with FAILED
    reachable from any non-terminal state.
    """

    CREATED = "CREATED"
    TRANSFERRING = "TRANSFERRING"
    FINALIZING = "FINALIZING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """Return True for COMPLETE and FAILED."""
        return self in (SessionState.COMPLETE, SessionState.FAILED)


class JobType(str, Enum):
    """Kind of inbound sync job."""

    DOWNLOAD = "DOWNLOAD"
    RECONCILE = "RECONCILE"


class JobStatus(str, Enum):
    """Lifecycle of a queued sync job."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class Severity(str, Enum):
    """Severity of an audit event."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class EventSource(str, Enum):
    """Who triggered an audit event."""

    WEBHOOK = "WEBHOOK"
    API = "API"
    SYSTEM = "SYSTEM"
