"""Subscription management for the logged-in user."""

import logging

import stripe
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditTrail
from core.config import Settings, get_settings
from core.database import get_db
from core.exceptions import ServiceUnavailableError
from core.security import get_current_user
from schemas.billing import SubscriptionResponse
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)
router = APIRouter()


class CheckoutRequest(BaseModel):
    price_id: str
    trial_days: int = 0


class CheckoutResponse(BaseModel):
    url: str


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    current_user=Depends(get_current_user),
):
    """Cancel at the end of the current period."""
    service = StripeService(db, settings, AuditTrail())
    try:
        return await service.cancel_subscription(current_user.id)
    except stripe.StripeError as e:
        logger.error(f"Stripe error cancelling subscription for user {current_user.id}: {e}")
        raise ServiceUnavailableError("Billing provider unavailable") from e


@router.post("/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    current_user=Depends(get_current_user),
):
    """Undo a pending cancellation."""
    service = StripeService(db, settings, AuditTrail())
    try:
        return await service.reactivate_subscription(current_user.id)
    except stripe.StripeError as e:
        logger.error(f"Stripe error reactivating subscription for user {current_user.id}: {e}")
        raise ServiceUnavailableError("Billing provider unavailable") from e


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    current_user=Depends(get_current_user),
):
    """Hosted checkout for a plan; the subscription arrives by webhook."""
    service = StripeService(db, settings, AuditTrail())
    try:
        session = await service.create_checkout_session(current_user, body.price_id, body.trial_days)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout for user {current_user.id}: {e}")
        raise ServiceUnavailableError("Billing provider unavailable") from e
    return CheckoutResponse(url=session["checkout_url"])
