"""Webhook receiver for remote work item notifications."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from attachsync.server.api.deps import get_engine
from attachsync.server.schemas import WebhookResponse, ingest_to_response
from attachsync.sync.engine import SyncEngine
from attachsync.sync.webhook import INVALID_SIGNATURE

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post(
    "/workitem",
    response_model=WebhookResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_workitem_webhook(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    engine: SyncEngine = Depends(get_engine),
) -> WebhookResponse:
    """Validate the signature over the raw body and queue a reconcile job."""
    raw_payload = await request.body()
    result = engine.ingest_webhook(raw_payload, x_webhook_signature)
    if not result.accepted:
        if result.reason == INVALID_SIGNATURE:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Rejected webhook: {result.reason}",
        )
    return ingest_to_response(result)
