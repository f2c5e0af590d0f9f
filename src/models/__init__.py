"""Database models for AnthonChat."""

from .base import Base
from .user import User, SignupSource
from .channel_link import Channel, UserChannel, LinkNonce, LinkMethod, NonceStatus
from .subscription import StripeCustomer, Tier, Subscription, SubscriptionStatus
from .usage import UsageRecord

__all__ = [
    "Base",
    "User",
    "SignupSource",
    "Channel",
    "UserChannel",
    "LinkNonce",
    "LinkMethod",
    "NonceStatus",
    "StripeCustomer",
    "Tier",
    "Subscription",
    "SubscriptionStatus",
    "UsageRecord",
]
