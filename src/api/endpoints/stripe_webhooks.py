"""Stripe webhook receiver."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditTrail
from core.config import Settings, get_settings
from core.database import get_db
from core.exceptions import InternalServerError
from schemas.billing import WebhookAck
from services.stripe_webhook_handler import StripeWebhookHandler

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhooks", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Verify and apply one Stripe event.

    Bad signatures get a 400 and change nothing. Verified events are always
    acknowledged, including ones whose handler failed.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise InternalServerError("Webhook secret is not configured")

    payload = await request.body()
    handler = StripeWebhookHandler(db, settings, AuditTrail())
    event = handler.verify(payload, stripe_signature)

    handled = await handler.handle(event)
    if not handled:
        logger.warning(f"Stripe event {event.get('id')} acknowledged after handler failure")
    return WebhookAck()
