"""Webhook ingestion for remote work item change notifications.

This module provides:
- compute_signature / verify_signature: HMAC-SHA256 over the raw body
- WebhookIngestor: validates notifications and queues reconcile jobs
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import TYPE_CHECKING, Any

from attachsync.core.types import EventSource, JobType, Severity
from attachsync.sync.types import IngestResult

if TYPE_CHECKING:
    from attachsync.server.database import Database

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="
RECONCILE_EVENTS = frozenset({"workitem.created", "workitem.updated"})
WEBHOOK_JOB_PRIORITY = 3

# Rejection reasons
INVALID_SIGNATURE = "INVALID_SIGNATURE"
MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of the payload."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: str | None) -> bool:
    """Constant-time check of a signature header.

    An optional ``sha256=`` prefix is accepted. Without a configured secret
    every notification is rejected.
    """
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX) :]
    return hmac.compare_digest(compute_signature(secret, payload), provided.lower())


def _work_item_id(payload: dict[str, Any]) -> int | None:
    resource = payload.get("resource")
    if not isinstance(resource, dict):
        return None
    raw = resource.get("workItemId", resource.get("id"))
    if isinstance(raw, bool):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


class WebhookIngestor:
    """Turns signed notifications into RECONCILE jobs."""

    def __init__(self, db: Database, secret: str, job_max_retries: int = 3) -> None:
        self._db = db
        self._secret = secret
        self._job_max_retries = job_max_retries

    def _reject(self, reason: str, message: str, details: dict[str, Any] | None = None) -> IngestResult:
        logger.warning(f"Rejected webhook: {message}")
        self._db.record_event(
            "webhook.rejected",
            message,
            severity=Severity.ERROR,
            source=EventSource.WEBHOOK,
            details={"reason": reason, **(details or {})},
        )
        return IngestResult(accepted=False, reason=reason)

    def ingest(self, raw_payload: bytes, signature: str | None) -> IngestResult:
        """Validate a notification and queue a reconcile job for it.

        Args:
            raw_payload: Request body exactly as received.
            signature: Value of the signature header, if present.

        Returns:
            IngestResult. Rejected notifications create no job.
        """
        if not verify_signature(self._secret, raw_payload, signature):
            reason = "missing" if not signature else "mismatch"
            return self._reject(
                INVALID_SIGNATURE, f"Webhook signature {reason}", {"signature": reason}
            )

        try:
            payload = json.loads(raw_payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return self._reject(MALFORMED_PAYLOAD, f"Webhook body is not valid JSON: {e}")
        if not isinstance(payload, dict):
            return self._reject(MALFORMED_PAYLOAD, "Webhook body is not a JSON object")

        event_type = payload.get("eventType")
        if event_type not in RECONCILE_EVENTS:
            logger.debug(f"Ignoring webhook event {event_type}")
            self._db.record_event(
                "webhook.ignored",
                f"Ignored webhook event {event_type}",
                source=EventSource.WEBHOOK,
            )
            return IngestResult(accepted=True, event_type=event_type)

        work_item_id = _work_item_id(payload)
        if work_item_id is None:
            return self._reject(
                MALFORMED_PAYLOAD,
                f"Webhook event {event_type} has no work item id",
                {"event_type": event_type},
            )

        job, created = self._db.enqueue_job(
            work_item_id,
            JobType.RECONCILE,
            priority=WEBHOOK_JOB_PRIORITY,
            payload={"event_type": event_type, "notification_id": payload.get("id")},
            max_retries=self._job_max_retries,
        )
        self._db.record_event(
            "webhook.queued",
            f"{event_type} queued reconcile job {job.id}"
            + ("" if created else " (coalesced)"),
            source=EventSource.WEBHOOK,
            work_item_id=work_item_id,
            details={"job_id": job.id, "coalesced": not created},
        )
        logger.info(f"Webhook {event_type} for work item {work_item_id}: job {job.id}")
        return IngestResult(
            accepted=True,
            event_type=event_type,
            work_item_id=work_item_id,
            job_id=job.id,
            coalesced=not created,
        )
