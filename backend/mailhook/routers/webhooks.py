"""
Inbound webhook router.

Endpoints:
  POST /inbound               sender notification (auth: HMAC in X-Signature)
  GET  /deliveries            recent delivery outcomes (auth: operator JWT)
  GET  /deliveries/stats      outcome counters since startup (auth: operator JWT)

Response contract for /inbound
------------------------------
processed / already_processed   200
terminal_failure                200 with processed=false; retrying can never
                                succeed, so the sender is told to stop
retryable_failure               503; the sender redelivers with backoff
rejected                        401; no side effects
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from mailhook.auth import get_current_user
from mailhook.models.delivery import DeliveryOutcome, DeliveryRecord
from mailhook.services.receiver import WebhookReceiver

logger = logging.getLogger(__name__)

router = APIRouter()


def get_receiver(request: Request) -> WebhookReceiver:
    """The receiver built by create_app() for this application."""
    return request.app.state.receiver


@router.post("/inbound")
async def receive_inbound(
    request: Request,
    x_signature: Optional[str] = Header(None),
    x_webhook_signature: Optional[str] = Header(None),
    receiver: WebhookReceiver = Depends(get_receiver),
) -> dict:
    """
    Receive one notification.

    The body is read as raw bytes so the signature is checked against exactly
    what the sender signed. Accepts the signature in either X-Signature or
    the X-Webhook-Signature alias.
    """
    raw_body = await request.body()
    record = await receiver.receive(raw_body, x_signature or x_webhook_signature)

    if record.outcome == DeliveryOutcome.REJECTED:
        if record.reason == "secret_not_configured":
            raise HTTPException(status_code=401, detail="Webhook secret not configured")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if record.outcome == DeliveryOutcome.RETRYABLE_FAILURE:
        raise HTTPException(
            status_code=503,
            detail=f"Delivery not processed, retry later: {record.reason}",
        )

    return {
        "received": True,
        "processed": record.outcome == DeliveryOutcome.PROCESSED,
        "status": record.outcome.value,
        "id": record.delivery_id,
        "reason": record.reason,
    }


@router.get("/deliveries")
async def list_deliveries(
    limit: int = Query(50, ge=1, le=500),
    delivery_id: Optional[str] = None,
    _user_id: str = Depends(get_current_user),
    receiver: WebhookReceiver = Depends(get_receiver),
) -> list[DeliveryRecord]:
    """Most recent delivery outcomes first, optionally for one delivery id."""
    if delivery_id:
        return receiver.delivery_log.for_delivery(delivery_id)[:limit]
    return receiver.delivery_log.recent(limit)


@router.get("/deliveries/stats")
async def delivery_stats(
    _user_id: str = Depends(get_current_user),
    receiver: WebhookReceiver = Depends(get_receiver),
) -> dict:
    """Outcome counters since startup plus current in-flight count."""
    return {
        "outcomes": receiver.delivery_log.stats(),
        "in_flight": receiver.in_flight,
        "routes": receiver.router.prefixes,
    }
