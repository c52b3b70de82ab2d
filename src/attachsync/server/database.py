"""Metadata store using SQLAlchemy with SQLite.

This module provides:
- Attachment records (content-hash dedup, soft delete)
- Work item links (which work items carry which record)
- Chunked upload sessions
- The sync job queue
- The append-only sync event log
- Summary statistics
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attachsync.core.types import (
    AttachmentSource,
    EventSource,
    JobStatus,
    JobType,
    SessionState,
    Severity,
    SyncStatus,
)
from attachsync.server.models import (
    AttachmentLink,
    AttachmentRecord,
    Base,
    SyncEvent,
    SyncJob,
    UploadSession,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine


class Database:
    """SQLAlchemy database for attachment sync metadata.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    # === Attachment operations ===

    def create_attachment(
        self,
        attachment_id: str,
        sha256: str,
        file_name: str,
        file_size: int,
        remote_url: str,
        source: AttachmentSource,
        sync_status: SyncStatus = SyncStatus.PENDING,
        work_item_id: int | None = None,
        mime_type: str | None = None,
        local_path: str | None = None,
    ) -> AttachmentRecord:
        """Insert a new attachment record.

        Returns:
            Created AttachmentRecord.

        Raises:
            IntegrityError: If the attachment id, or the content hash of a
                live record, already exists.
        """
        with self._session() as session:
            record = AttachmentRecord(
                attachment_id=attachment_id,
                sha256=sha256,
                file_name=file_name,
                file_size=file_size,
                remote_url=remote_url,
                source=source.value,
                sync_status=sync_status.value,
                work_item_id=work_item_id,
                mime_type=mime_type,
                local_path=local_path,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            session.expunge(record)
            return record

    def get_attachment(
        self, attachment_id: str, include_deleted: bool = False
    ) -> AttachmentRecord | None:
        """Get an attachment by its remote id.

        Args:
            attachment_id: Remote attachment id.
            include_deleted: Also return soft-deleted records.

        Returns:
            AttachmentRecord if found, None otherwise.
        """
        with self._session() as session:
            stmt = select(AttachmentRecord).where(
                AttachmentRecord.attachment_id == attachment_id
            )
            if not include_deleted:
                stmt = stmt.where(AttachmentRecord.deleted_at.is_(None))
            record = session.execute(stmt).scalar_one_or_none()
            if record:
                session.expunge(record)
            return record

    def get_attachment_by_hash(self, sha256: str) -> AttachmentRecord | None:
        """Get the live attachment with a given content hash."""
        with self._session() as session:
            stmt = select(AttachmentRecord).where(
                AttachmentRecord.sha256 == sha256,
                AttachmentRecord.deleted_at.is_(None),
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record:
                session.expunge(record)
            return record

    def list_attachments(
        self, work_item_id: int, include_deleted: bool = False
    ) -> list[AttachmentRecord]:
        """List attachments owned by or linked to a work item, oldest first."""
        with self._session() as session:
            linked = select(AttachmentLink.attachment_id).where(
                AttachmentLink.work_item_id == work_item_id
            )
            stmt = select(AttachmentRecord).where(
                or_(
                    AttachmentRecord.work_item_id == work_item_id,
                    AttachmentRecord.attachment_id.in_(linked),
                )
            )
            if not include_deleted:
                stmt = stmt.where(AttachmentRecord.deleted_at.is_(None))
            stmt = stmt.order_by(AttachmentRecord.created_at, AttachmentRecord.id)
            records = list(session.execute(stmt).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def known_attachment_ids(self, attachment_ids: list[str]) -> set[str]:
        """Return which of the given remote ids have a record or a link.

        Deleted records count, and so do remote ids linked to a record
        stored under another id.
        """
        if not attachment_ids:
            return set()
        with self._session() as session:
            records = select(AttachmentRecord.attachment_id).where(
                AttachmentRecord.attachment_id.in_(attachment_ids)
            )
            aliases = select(AttachmentLink.remote_attachment_id).where(
                AttachmentLink.remote_attachment_id.in_(attachment_ids)
            )
            known = set(session.execute(records).scalars().all())
            known.update(session.execute(aliases).scalars().all())
            return known

    def remotely_removed_ids(self, attachment_ids: list[str]) -> set[str]:
        """Return which of the given ids belong to records removed by reconcile."""
        if not attachment_ids:
            return set()
        with self._session() as session:
            stmt = select(AttachmentRecord.attachment_id).where(
                AttachmentRecord.attachment_id.in_(attachment_ids),
                AttachmentRecord.deleted_at.is_not(None),
                AttachmentRecord.removed_remotely.is_(True),
            )
            return set(session.execute(stmt).scalars().all())

    def update_attachment_status(
        self,
        attachment_id: str,
        sync_status: SyncStatus,
        error: str | None = None,
        work_item_id: int | None = None,
    ) -> AttachmentRecord | None:
        """Set the sync status of an attachment.

        Args:
            attachment_id: Remote attachment id.
            sync_status: New status.
            error: Error text to store, cleared when None.
            work_item_id: Owner to assign if the record has none yet.

        Returns:
            Updated record, or None if not found.
        """
        with self._session() as session:
            stmt = select(AttachmentRecord).where(
                AttachmentRecord.attachment_id == attachment_id
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                return None
            record.sync_status = sync_status.value
            record.last_sync_error = error
            if work_item_id is not None and record.work_item_id is None:
                record.work_item_id = work_item_id
            session.commit()
            session.refresh(record)
            session.expunge(record)
            return record

    def set_attachment_error(self, attachment_id: str, error: str) -> AttachmentRecord | None:
        """Store the last sync error of an attachment, keeping its status."""
        with self._session() as session:
            stmt = select(AttachmentRecord).where(
                AttachmentRecord.attachment_id == attachment_id
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                return None
            record.last_sync_error = error
            session.commit()
            session.refresh(record)
            session.expunge(record)
            return record

    def soft_delete_attachment(self, attachment_id: str, removed_remotely: bool = False) -> bool:
        """Mark an attachment as deleted.

        Args:
            attachment_id: Remote attachment id.
            removed_remotely: True when the record is deleted because its
                relations disappeared, so a later reconcile may restore it.

        Returns:
            True if a live record was deleted, False otherwise.
        """
        with self._session() as session:
            stmt = select(AttachmentRecord).where(
                AttachmentRecord.attachment_id == attachment_id,
                AttachmentRecord.deleted_at.is_(None),
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                return False
            record.deleted_at = datetime.now(UTC)
            record.removed_remotely = removed_remotely
            session.commit()
            return True

    def restore_attachment(self, attachment_id: str) -> AttachmentRecord | None:
        """Bring back a record removed by reconcile.

        Returns:
            The live record, or None if it was not removed remotely or
            another live record now holds the same content.
        """
        with self._session() as session:
            stmt = select(AttachmentRecord).where(
                AttachmentRecord.attachment_id == attachment_id,
                AttachmentRecord.deleted_at.is_not(None),
                AttachmentRecord.removed_remotely.is_(True),
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                return None
            clash = session.execute(
                select(AttachmentRecord.id).where(
                    AttachmentRecord.sha256 == record.sha256,
                    AttachmentRecord.deleted_at.is_(None),
                )
            ).first()
            if clash is not None:
                return None
            record.deleted_at = None
            record.removed_remotely = False
            session.commit()
            session.refresh(record)
            session.expunge(record)
            return record

    # === Attachment link operations ===

    def add_link(
        self, work_item_id: int, remote_attachment_id: str, attachment_id: str
    ) -> AttachmentLink:
        """Record that a work item carries an attachment (idempotent).

        Args:
            work_item_id: Work item holding the relation.
            remote_attachment_id: Attachment id in the relation URL.
            attachment_id: Local record the relation resolves to.

        Returns:
            The new or existing link.
        """
        with self._session() as session:
            stmt = select(AttachmentLink).where(
                AttachmentLink.work_item_id == work_item_id,
                AttachmentLink.remote_attachment_id == remote_attachment_id,
            )
            link = session.execute(stmt).scalar_one_or_none()
            if link is None:
                link = AttachmentLink(
                    work_item_id=work_item_id,
                    remote_attachment_id=remote_attachment_id,
                    attachment_id=attachment_id,
                )
                session.add(link)
                try:
                    session.commit()
                except IntegrityError:
                    # Added concurrently
                    session.rollback()
                    link = session.execute(stmt).scalar_one()
            session.refresh(link)
            session.expunge(link)
            return link

    def list_links(self, work_item_id: int) -> list[AttachmentLink]:
        """List the attachment links of a work item."""
        with self._session() as session:
            stmt = (
                select(AttachmentLink)
                .where(AttachmentLink.work_item_id == work_item_id)
                .order_by(AttachmentLink.id)
            )
            links = list(session.execute(stmt).scalars().all())
            for link in links:
                session.expunge(link)
            return links

    def remove_link(self, work_item_id: int, remote_attachment_id: str) -> bool:
        """Forget a relation of a work item.

        Returns:
            True if a link was removed.
        """
        with self._session() as session:
            stmt = select(AttachmentLink).where(
                AttachmentLink.work_item_id == work_item_id,
                AttachmentLink.remote_attachment_id == remote_attachment_id,
            )
            link = session.execute(stmt).scalar_one_or_none()
            if link is None:
                return False
            session.delete(link)
            session.commit()
            return True

    def count_links(self, attachment_id: str) -> int:
        """Number of work item relations resolving to a record."""
        with self._session() as session:
            stmt = select(func.count(AttachmentLink.id)).where(
                AttachmentLink.attachment_id == attachment_id
            )
            return session.execute(stmt).scalar() or 0

    def resolve_attachment_id(self, remote_attachment_id: str) -> str | None:
        """Map a remote attachment id to the id of its local record.

        Returns:
            The id itself if a record exists under it, the linked record id
            if it is an alias, None if unknown.
        """
        with self._session() as session:
            record = session.execute(
                select(AttachmentRecord.attachment_id).where(
                    AttachmentRecord.attachment_id == remote_attachment_id
                )
            ).scalar_one_or_none()
            if record is not None:
                return record
            return session.execute(
                select(AttachmentLink.attachment_id)
                .where(AttachmentLink.remote_attachment_id == remote_attachment_id)
                .limit(1)
            ).scalar_one_or_none()

    # === Upload session operations ===

    def create_upload_session(
        self,
        session_id: str,
        file_name: str,
        total_size: int,
        sha256: str,
        chunk_size: int,
        total_chunks: int,
        ttl: timedelta,
        work_item_id: int | None = None,
    ) -> UploadSession:
        """Persist a new chunked upload session in CREATED state.

        Raises:
            IntegrityError: If a session already exists for (work_item_id, sha256).
        """
        now = datetime.now(UTC)
        with self._session() as session:
            upload = UploadSession(
                session_id=session_id,
                work_item_id=work_item_id,
                file_name=file_name,
                total_size=total_size,
                sha256=sha256,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                chunks_acknowledged=0,
                state=SessionState.CREATED.value,
                created_at=now,
                updated_at=now,
                expires_at=now + ttl,
            )
            session.add(upload)
            session.commit()
            session.refresh(upload)
            session.expunge(upload)
            return upload

    def get_upload_session(self, session_id: str) -> UploadSession | None:
        """Get an upload session by id."""
        with self._session() as session:
            upload = session.get(UploadSession, session_id)
            if upload:
                session.expunge(upload)
            return upload

    def find_upload_session(self, work_item_id: int | None, sha256: str) -> UploadSession | None:
        """Find the session owning (work_item_id, sha256), if any."""
        with self._session() as session:
            if work_item_id is None:
                owner = UploadSession.work_item_id.is_(None)
            else:
                owner = UploadSession.work_item_id == work_item_id
            stmt = (
                select(UploadSession)
                .where(owner, UploadSession.sha256 == sha256)
                .order_by(UploadSession.created_at.desc())
                .limit(1)
            )
            upload = session.execute(stmt).scalar_one_or_none()
            if upload:
                session.expunge(upload)
            return upload

    def update_upload_session(
        self,
        session_id: str,
        state: SessionState | None = None,
        chunks_acknowledged: int | None = None,
    ) -> UploadSession | None:
        """Update state and/or acknowledged chunk count of a session.

        Raises:
            ValueError: If chunks_acknowledged would decrease or exceed total_chunks.
        """
        with self._session() as session:
            upload = session.get(UploadSession, session_id)
            if upload is None:
                return None
            if chunks_acknowledged is not None:
                if chunks_acknowledged < upload.chunks_acknowledged:
                    raise ValueError(
                        f"chunks_acknowledged cannot decrease "
                        f"({upload.chunks_acknowledged} -> {chunks_acknowledged})"
                    )
                if chunks_acknowledged > upload.total_chunks:
                    raise ValueError(
                        f"chunks_acknowledged {chunks_acknowledged} exceeds "
                        f"total_chunks {upload.total_chunks}"
                    )
                upload.chunks_acknowledged = chunks_acknowledged
            if state is not None:
                upload.state = state.value
            upload.updated_at = datetime.now(UTC)
            session.commit()
            session.refresh(upload)
            session.expunge(upload)
            return upload

    def delete_upload_session(self, session_id: str) -> bool:
        """Delete a session. Returns True if it existed."""
        with self._session() as session:
            upload = session.get(UploadSession, session_id)
            if upload is None:
                return False
            session.delete(upload)
            session.commit()
            return True

    def list_upload_sessions(self) -> list[UploadSession]:
        """List all sessions, newest first."""
        with self._session() as session:
            stmt = select(UploadSession).order_by(UploadSession.created_at.desc())
            uploads = list(session.execute(stmt).scalars().all())
            for upload in uploads:
                session.expunge(upload)
            return uploads

    def cleanup_expired_sessions(self) -> int:
        """Delete all expired upload sessions.

        Returns:
            Number of sessions deleted.
        """
        now = datetime.now(UTC)
        with self._session() as session:
            stmt = select(UploadSession).where(UploadSession.expires_at < now)
            uploads = list(session.execute(stmt).scalars().all())
            count = len(uploads)
            for upload in uploads:
                session.delete(upload)
            session.commit()
            return count

    # === Job operations ===

    def enqueue_job(
        self,
        work_item_id: int,
        job_type: JobType,
        attachment_id: str | None = None,
        priority: int = 5,
        payload: dict[str, Any] | None = None,
        max_retries: int = 3,
    ) -> tuple[SyncJob, bool]:
        """Queue a job, coalescing with an identical job still QUEUED.

        Returns:
            Tuple of (job, created). ``created`` is False when an existing
            queued job was returned instead.
        """
        with self._session() as session:
            stmt = select(SyncJob).where(
                SyncJob.work_item_id == work_item_id,
                SyncJob.job_type == job_type.value,
                SyncJob.status == JobStatus.QUEUED.value,
            )
            if attachment_id is None:
                stmt = stmt.where(SyncJob.attachment_id.is_(None))
            else:
                stmt = stmt.where(SyncJob.attachment_id == attachment_id)
            existing = session.execute(stmt.limit(1)).scalar_one_or_none()
            if existing:
                # Keep the most urgent priority of the merged requests
                if priority < existing.priority:
                    existing.priority = priority
                    session.commit()
                    session.refresh(existing)
                session.expunge(existing)
                return existing, False

            job = SyncJob(
                work_item_id=work_item_id,
                attachment_id=attachment_id,
                job_type=job_type.value,
                status=JobStatus.QUEUED.value,
                priority=priority,
                payload=payload,
                max_retries=max_retries,
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            session.expunge(job)
            return job, True

    def get_job(self, job_id: int) -> SyncJob | None:
        """Get a job by id."""
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job:
                session.expunge(job)
            return job

    def claim_next_job(self, exclude: Collection[int] = ()) -> SyncJob | None:
        """Mark the most urgent queued job RUNNING and return it.

        Jobs run in (priority, created_at) order; lower priority first.

        Args:
            exclude: Job ids to pass over (e.g. already attempted this round).
        """
        with self._session() as session:
            stmt = select(SyncJob).where(SyncJob.status == JobStatus.QUEUED.value)
            if exclude:
                stmt = stmt.where(SyncJob.id.not_in(list(exclude)))
            stmt = (
                stmt
                .order_by(SyncJob.priority, SyncJob.created_at, SyncJob.id)
                .limit(1)
            )
            job = session.execute(stmt).scalar_one_or_none()
            if job is None:
                return None
            job.status = JobStatus.RUNNING.value
            job.started_at = datetime.now(UTC)
            session.commit()
            session.refresh(job)
            session.expunge(job)
            return job

    def complete_job(self, job_id: int) -> None:
        """Mark a job DONE."""
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job:
                job.status = JobStatus.DONE.value
                job.error_message = None
                job.completed_at = datetime.now(UTC)
                session.commit()

    def fail_job(self, job_id: int, error: str) -> SyncJob | None:
        """Record a job failure.

        The job goes back to QUEUED while retries remain, otherwise FAILED.

        Returns:
            Updated job, or None if not found.
        """
        with self._session() as session:
            job = session.get(SyncJob, job_id)
            if job is None:
                return None
            job.retry_count += 1
            job.error_message = error
            if job.retry_count < job.max_retries:
                job.status = JobStatus.QUEUED.value
                job.started_at = None
            else:
                job.status = JobStatus.FAILED.value
                job.completed_at = datetime.now(UTC)
            session.commit()
            session.refresh(job)
            session.expunge(job)
            return job

    def requeue_running_jobs(self) -> int:
        """Put jobs left RUNNING by a previous process back in the queue."""
        with self._session() as session:
            stmt = select(SyncJob).where(SyncJob.status == JobStatus.RUNNING.value)
            jobs = list(session.execute(stmt).scalars().all())
            for job in jobs:
                job.status = JobStatus.QUEUED.value
                job.started_at = None
            session.commit()
            return len(jobs)

    def list_jobs(
        self,
        work_item_id: int | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        """List jobs, newest first."""
        with self._session() as session:
            stmt = select(SyncJob)
            if work_item_id is not None:
                stmt = stmt.where(SyncJob.work_item_id == work_item_id)
            if status is not None:
                stmt = stmt.where(SyncJob.status == status.value)
            stmt = stmt.order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).limit(limit)
            jobs = list(session.execute(stmt).scalars().all())
            for job in jobs:
                session.expunge(job)
            return jobs

    # === Event operations ===

    def record_event(
        self,
        event_type: str,
        message: str,
        severity: Severity = Severity.INFO,
        source: EventSource = EventSource.SYSTEM,
        work_item_id: int | None = None,
        attachment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SyncEvent:
        """Append an event to the audit log."""
        with self._session() as session:
            event = SyncEvent(
                event_type=event_type,
                message=message,
                severity=severity.value,
                source=source.value,
                work_item_id=work_item_id,
                attachment_id=attachment_id,
                details=details,
            )
            session.add(event)
            session.commit()
            session.refresh(event)
            session.expunge(event)
            return event

    def list_events(
        self,
        work_item_id: int | None = None,
        severity: Severity | None = None,
        limit: int = 50,
    ) -> list[SyncEvent]:
        """List events, newest first."""
        with self._session() as session:
            stmt = select(SyncEvent)
            if work_item_id is not None:
                stmt = stmt.where(SyncEvent.work_item_id == work_item_id)
            if severity is not None:
                stmt = stmt.where(SyncEvent.severity == severity.value)
            stmt = stmt.order_by(SyncEvent.occurred_at.desc(), SyncEvent.id.desc()).limit(limit)
            events = list(session.execute(stmt).scalars().all())
            for event in events:
                session.expunge(event)
            return events

    def cleanup_old_events(self, older_than_days: int = 30) -> int:
        """Delete events older than the retention window.

        Returns:
            Number of events deleted.
        """
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        with self._session() as session:
            stmt = select(SyncEvent).where(SyncEvent.occurred_at < cutoff)
            events = list(session.execute(stmt).scalars().all())
            count = len(events)
            for event in events:
                session.delete(event)
            session.commit()
            return count

    # === Statistics operations ===

    def get_sync_summary(self, work_item_id: int) -> dict[str, int]:
        """Count live attachments of a work item by sync status.

        Returns:
            Dict with total, synced, pending, failed and total_size.
        """
        with self._session() as session:
            stmt = (
                select(
                    AttachmentRecord.sync_status,
                    func.count(AttachmentRecord.id).label("count"),
                    func.coalesce(func.sum(AttachmentRecord.file_size), 0).label("size"),
                )
                .where(
                    AttachmentRecord.work_item_id == work_item_id,
                    AttachmentRecord.deleted_at.is_(None),
                )
                .group_by(AttachmentRecord.sync_status)
            )
            summary = {"total": 0, "synced": 0, "pending": 0, "failed": 0, "total_size": 0}
            for row in session.execute(stmt).all():
                summary[row.sync_status.lower()] = row.count
                summary["total"] += row.count
                summary["total_size"] += row.size
            return summary

    def get_sync_stats(self) -> dict[str, Any]:
        """Global counters for attachments, sessions, jobs and events."""
        with self._session() as session:
            by_status = dict(
                session.execute(
                    select(AttachmentRecord.sync_status, func.count(AttachmentRecord.id))
                    .where(AttachmentRecord.deleted_at.is_(None))
                    .group_by(AttachmentRecord.sync_status)
                ).all()
            )
            by_source = dict(
                session.execute(
                    select(AttachmentRecord.source, func.count(AttachmentRecord.id))
                    .where(AttachmentRecord.deleted_at.is_(None))
                    .group_by(AttachmentRecord.source)
                ).all()
            )
            total_size = session.execute(
                select(func.coalesce(func.sum(AttachmentRecord.file_size), 0)).where(
                    AttachmentRecord.deleted_at.is_(None)
                )
            ).scalar() or 0
            deleted = session.execute(
                select(func.count(AttachmentRecord.id)).where(
                    AttachmentRecord.deleted_at.is_not(None)
                )
            ).scalar() or 0
            jobs = dict(
                session.execute(
                    select(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status)
                ).all()
            )
            sessions = session.execute(select(func.count(UploadSession.session_id))).scalar() or 0
            errors = session.execute(
                select(func.count(SyncEvent.id)).where(SyncEvent.severity == Severity.ERROR.value)
            ).scalar() or 0

            return {
                "attachments": {
                    "total": sum(by_status.values()),
                    "by_status": by_status,
                    "by_source": by_source,
                    "total_size": total_size,
                    "deleted": deleted,
                },
                "jobs": jobs,
                "upload_sessions": sessions,
                "error_events": errors,
            }
