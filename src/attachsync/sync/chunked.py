"""Resumable chunked upload protocol.

This module provides:
- ChunkedTransfer: drives an UploadSession through
  CREATED -> TRANSFERRING -> FINALIZING -> COMPLETE (or FAILED)
- ALLOWED_TRANSITIONS: the session state machine

Chunks of one session are sent strictly in order. Progress is persisted
after every acknowledged chunk, so a session left behind by a crashed
process is resumed from its last acknowledged chunk.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from attachsync.core.hashing import chunk_range, compute_content_hash, count_chunks, iter_chunk_ranges
from attachsync.core.types import SessionState
from attachsync.remote.transport import TransportError
from attachsync.sync.types import (
    ChunkedUploadError,
    ChunkOrderError,
    ContentIntegrityError,
    InvalidTransitionError,
)

if TYPE_CHECKING:
    from attachsync.core.config import SyncSettings
    from attachsync.remote.api import RemoteAttachment, WorkItemClient
    from attachsync.server.database import Database
    from attachsync.server.models import UploadSession

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.TRANSFERRING, SessionState.FAILED}),
    SessionState.TRANSFERRING: frozenset({SessionState.FINALIZING, SessionState.FAILED}),
    SessionState.FINALIZING: frozenset({SessionState.COMPLETE, SessionState.FAILED}),
    SessionState.COMPLETE: frozenset(),
    SessionState.FAILED: frozenset(),
}


class ChunkedTransfer:
    """Chunked upload sessions backed by the metadata store."""

    def __init__(self, db: Database, client: WorkItemClient, settings: SyncSettings) -> None:
        self._db = db
        self._client = client
        self._settings = settings

    @property
    def chunk_size(self) -> int:
        return self._settings.chunk_size

    # === Session lifecycle ===

    def create_session(
        self,
        work_item_id: int | None,
        file_name: str,
        total_size: int,
        sha256: str,
    ) -> UploadSession:
        """Persist a new session in CREATED state.

        Raises:
            ChunkedUploadError: If total_size is not positive.
        """
        if total_size <= 0:
            raise ChunkedUploadError("Cannot create an upload session for empty content")
        session = self._db.create_upload_session(
            session_id=uuid.uuid4().hex,
            work_item_id=work_item_id,
            file_name=file_name,
            total_size=total_size,
            sha256=sha256,
            chunk_size=self.chunk_size,
            total_chunks=count_chunks(total_size, self.chunk_size),
            ttl=timedelta(hours=self._settings.session_ttl_hours),
        )
        logger.info(
            f"Created upload session {session.session_id} for {file_name} "
            f"({total_size} bytes, {session.total_chunks} chunks)"
        )
        return session

    def resume_or_create(
        self,
        work_item_id: int | None,
        file_name: str,
        total_size: int,
        sha256: str,
    ) -> tuple[UploadSession, bool]:
        """Resume the live session for (work_item_id, sha256) or create one.

        Expired, terminal or incompatible sessions are discarded first.

        Returns:
            Tuple of (session, resumed).
        """
        existing = self._db.find_upload_session(work_item_id, sha256)
        if existing is not None:
            reusable = (
                not existing.is_expired()
                and not SessionState(existing.state).is_terminal
                and existing.total_size == total_size
                and existing.chunk_size == self.chunk_size
            )
            if reusable:
                logger.info(
                    f"Resuming upload session {existing.session_id} at chunk "
                    f"{existing.chunks_acknowledged}/{existing.total_chunks}"
                )
                return existing, True
            logger.info(f"Discarding stale upload session {existing.session_id}")
            self._db.delete_upload_session(existing.session_id)
        return self.create_session(work_item_id, file_name, total_size, sha256), False

    def abandon(self, session_id: str) -> bool:
        """Cancel a session and delete its state.

        Returns:
            True if the session existed.
        """
        deleted = self._db.delete_upload_session(session_id)
        if deleted:
            logger.info(f"Abandoned upload session {session_id}")
        return deleted

    def fail(self, session_id: str, reason: str) -> None:
        """Move a session to FAILED and delete it."""
        session = self._db.get_upload_session(session_id)
        if session is None:
            return
        if not SessionState(session.state).is_terminal:
            self._db.update_upload_session(session_id, state=SessionState.FAILED)
        self._db.delete_upload_session(session_id)
        logger.warning(f"Upload session {session_id} failed: {reason}")

    def _require(self, session_id: str) -> UploadSession:
        session = self._db.get_upload_session(session_id)
        if session is None:
            raise ChunkedUploadError(f"Upload session not found: {session_id}")
        return session

    def _transition(self, session: UploadSession, target: SessionState) -> UploadSession:
        current = SessionState(session.state)
        if current == target and target in (SessionState.TRANSFERRING, SessionState.FINALIZING):
            return session
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        updated = self._db.update_upload_session(session.session_id, state=target)
        assert updated is not None
        return updated

    # === Transfer ===

    async def upload_chunk(
        self, session: UploadSession, chunk_index: int, data: bytes
    ) -> UploadSession:
        """Send one chunk and persist the acknowledgement.

        Chunks below ``chunks_acknowledged`` were already accepted and are
        skipped.

        Args:
            session: Target session.
            chunk_index: 0-based chunk index.
            data: The bytes of that chunk.

        Returns:
            The session with its updated acknowledged count.

        Raises:
            ChunkOrderError: If the index is ahead of the next expected chunk.
            ChunkedUploadError: If the chunk has the wrong size or the remote
                call fails.
        """
        current = self._require(session.session_id)
        if chunk_index < current.chunks_acknowledged:
            logger.debug(f"Chunk {chunk_index} of {current.session_id} already acknowledged")
            return current
        if chunk_index > current.chunks_acknowledged:
            raise ChunkOrderError(current.chunks_acknowledged, chunk_index)

        byte_range = chunk_range(chunk_index, current.total_size, current.chunk_size)
        if len(data) != byte_range.size:
            raise ChunkedUploadError(
                f"Chunk {chunk_index} must be {byte_range.size} bytes, got {len(data)}"
            )

        current = self._transition(current, SessionState.TRANSFERRING)
        try:
            await self._client.upload_chunk(
                current.session_id, current.file_name, data, byte_range, current.total_size
            )
        except TransportError as e:
            raise ChunkedUploadError(
                f"Chunk {chunk_index} of {current.session_id} failed: {e}", e.status_code
            ) from e

        updated = self._db.update_upload_session(
            current.session_id, chunks_acknowledged=chunk_index + 1
        )
        assert updated is not None
        logger.debug(
            f"Session {updated.session_id}: chunk {chunk_index + 1}/{updated.total_chunks} acknowledged"
        )
        return updated

    async def finalize(self, session: UploadSession, data: bytes) -> RemoteAttachment:
        """Commit the upload and delete the session.

        Args:
            session: Session whose chunks have all been acknowledged.
            data: The complete file content.

        Returns:
            The remote attachment created by the final upload.

        Raises:
            ContentIntegrityError: If ``data`` does not hash to the session hash.
            ChunkedUploadError: If chunks are missing or the upload fails.
        """
        current = self._require(session.session_id)
        if compute_content_hash(data) != current.sha256:
            raise ContentIntegrityError(
                f"Content hash mismatch for upload session {current.session_id}"
            )
        if current.chunks_acknowledged != current.total_chunks:
            raise ChunkedUploadError(
                f"Session {current.session_id} has {current.chunks_acknowledged}/"
                f"{current.total_chunks} chunks acknowledged"
            )

        current = self._transition(current, SessionState.FINALIZING)
        try:
            remote = await self._client.upload_attachment(data, current.file_name)
        except TransportError as e:
            raise ChunkedUploadError(
                f"Finalizing session {current.session_id} failed: {e}", e.status_code
            ) from e

        self._transition(current, SessionState.COMPLETE)
        self._db.delete_upload_session(current.session_id)
        logger.info(f"Upload session {current.session_id} complete: attachment {remote.attachment_id}")
        return remote

    async def transfer(self, session: UploadSession, data: bytes) -> tuple[RemoteAttachment, int]:
        """Send all remaining chunks, then finalize.

        Any failure moves the session to FAILED and deletes it.

        Returns:
            Tuple of (remote attachment, number of chunks sent by this call).
        """
        sent = 0
        try:
            if len(data) != session.total_size:
                raise ContentIntegrityError(
                    f"Expected {session.total_size} bytes, got {len(data)}"
                )
            current = self._require(session.session_id)
            ranges = iter_chunk_ranges(
                current.total_size, current.chunk_size, start_index=current.chunks_acknowledged
            )
            for byte_range in ranges:
                current = await self.upload_chunk(current, byte_range.index, byte_range.slice(data))
                sent += 1
            remote = await self.finalize(current, data)
        except Exception as e:
            self.fail(session.session_id, str(e))
            raise
        return remote, sent
