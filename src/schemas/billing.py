"""Billing schemas: webhook acknowledgement, plans, usage, subscription."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.subscription import SubscriptionStatus


class WebhookAck(BaseModel):
    received: bool = True


class PriceResponse(BaseModel):
    id: str
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None


class PlanResponse(BaseModel):
    """A Stripe product with its prices and trial annotation."""
    id: str
    name: str
    description: Optional[str] = None
    prices: List[PriceResponse] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    trial_eligible: bool = False
    trial_days: Optional[int] = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: SubscriptionStatus
    tier_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    cancel_at_period_end: bool
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None


class UsageResponse(BaseModel):
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    tokens_used: int = 0
    requests_used: int = 0
    max_tokens: Optional[int] = None
    max_requests: Optional[int] = None
    tier: Optional[str] = None
