"""SQLAlchemy models for the attachsync metadata store.

This module defines the database schema using SQLAlchemy ORM.
Enum-valued columns hold the ``.value`` of the enums in
``attachsync.core.types``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from attachsync.core.types import (
    AttachmentSource,
    EventSource,
    JobStatus,
    SessionState,
    Severity,
    SyncStatus,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class AttachmentRecord(Base):
    """An attachment known locally, uploaded or pulled from the remote side."""

    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    work_item_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attachment_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(
        String(10), default=AttachmentSource.LOCAL.value, nullable=False
    )
    remote_url: Mapped[str] = mapped_column(Text, nullable=False)
    local_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(10), default=SyncStatus.PENDING.value, nullable=False
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when reconcile removed the record because its relations disappeared
    removed_remotely: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Content hash is unique among live records only
    __table_args__ = (
        Index(
            "uq_attachments_sha256_live",
            "sha256",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("idx_attachments_work_item", "work_item_id"),
        Index("idx_attachments_deleted", "deleted_at"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class AttachmentLink(Base):
    """A remote AttachedFile relation resolved to a local record.

    ``remote_attachment_id`` is the id seen on the work item. It differs
    from ``attachment_id`` when the remote blob has the same content as a
    record stored under another id.
    """

    __tablename__ = "attachment_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    work_item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    remote_attachment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attachment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        Index("uq_attachment_links_relation", "work_item_id", "remote_attachment_id", unique=True),
        Index("idx_attachment_links_remote", "remote_attachment_id"),
        Index("idx_attachment_links_attachment", "attachment_id"),
    )


class UploadSession(Base):
    """Progress of a chunked upload, persisted so it can be resumed."""

    __tablename__ = "upload_sessions"

    session_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    work_item_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    total_size: Mapped[int] = mapped_column(Integer, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    chunks_acknowledged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    state: Mapped[str] = mapped_column(
        String(16), default=SessionState.CREATED.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("uq_upload_sessions_owner", "work_item_id", "sha256", unique=True),
        Index("idx_upload_sessions_expires", "expires_at"),
    )

    @property
    def progress(self) -> float:
        """Fraction of chunks acknowledged (0.0 - 1.0)."""
        if self.total_chunks == 0:
            return 0.0
        return self.chunks_acknowledged / self.total_chunks

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the session is past its expiry time."""
        now = now or datetime.now(UTC)
        expires_at = self.expires_at
        # SQLite returns naive datetimes, assume UTC
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return expires_at <= now


class SyncJob(Base):
    """A queued unit of inbound sync work."""

    __tablename__ = "sync_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    work_item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    attachment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    job_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=JobStatus.QUEUED.value, nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_sync_jobs_queue", "status", "priority", "created_at"),
        Index("idx_sync_jobs_work_item", "work_item_id"),
    )


class SyncEvent(Base):
    """Append-only audit log entry."""

    __tablename__ = "sync_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    work_item_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attachment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(
        String(8), default=Severity.INFO.value, nullable=False
    )
    source: Mapped[str] = mapped_column(
        String(16), default=EventSource.SYSTEM.value, nullable=False
    )
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_sync_events_occurred", "occurred_at"),
        Index("idx_sync_events_work_item", "work_item_id"),
    )
