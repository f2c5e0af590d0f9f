"""Billing models mirrored from Stripe.

Rows here are written by the billing webhook handler and, for trials, by
signup. Status transitions follow Stripe's subscription state machine; this
service only mirrors them.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Boolean, JSON, DateTime,
    ForeignKey, Enum as SQLAlchemyEnum, Index,
)
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin, UUIDMixin


class SubscriptionStatus(str, Enum):
    """Subscription status options (Stripe's vocabulary)."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class StripeCustomer(Base):
    """Local mirror of a Stripe customer, filled in by customer.* webhooks."""
    __tablename__ = "stripe_customers"

    id = Column(String(255), primary_key=True)  # cus_...
    email = Column(String(255), nullable=True, index=True)
    deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Tier(Base):
    """A purchasable plan, matched to Stripe by price id."""
    __tablename__ = "tiers"

    id = Column(String(36), primary_key=True)
    slug = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    stripe_price_id = Column(String(255), unique=True, nullable=True)
    max_tokens = Column(Integer, nullable=True)
    max_requests = Column(Integer, nullable=True)
    features = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)


class Subscription(UUIDMixin, TimestampMixin, Base):
    """Billing state for a user. At most one row per user."""
    __tablename__ = "subscriptions"

    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    tier_id = Column(String(36), ForeignKey("tiers.id"), nullable=True)
    status = Column(SQLAlchemyEnum(SubscriptionStatus), nullable=False)

    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True)

    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="subscription")
    tier = relationship("Tier")

    __table_args__ = (
        Index("idx_subscriptions_status", "status"),
    )

    @property
    def is_live(self) -> bool:
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
