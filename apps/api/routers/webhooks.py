"""Stripe webhook receiver."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.billing_state import apply_billing_event
from services.errors import WebhookSignatureInvalid
from services.stripe_gateway import verify_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
):
    """Verify, record and apply one provider event.

    Acknowledges only after the event is durably recorded; unexpected failures
    return 500 so the provider redelivers.
    """
    payload = await request.body()
    try:
        event = verify_webhook(payload, stripe_signature)
    except WebhookSignatureInvalid as exc:
        client = request.client.host if request.client else "unknown"
        logger.warning("Rejected webhook from %s: %s", client, exc)
        raise HTTPException(status_code=400, detail="Invalid signature") from exc

    try:
        outcome = await apply_billing_event(event, db)
    except Exception as exc:
        logger.exception("Webhook processing failed for event %s (%s)", event.get("id"), event.get("type"))
        raise HTTPException(status_code=500, detail="Webhook processing failed") from exc

    return {"received": True, "event_id": outcome.event_id, "outcome": outcome.outcome}
