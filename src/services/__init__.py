"""Service layer for business logic."""

from .nonce_store import NonceStore
from .channel_linking import ChannelLinkingService
from .link_initiation import LinkInitiationService
from .stripe_service import StripeService
from .stripe_webhook_handler import StripeWebhookHandler
from .signup_orchestrator import SignupOrchestrator
from .login_service import LoginService
from .plan_catalog import PlanCatalogService
from .usage_service import UsageService

__all__ = [
    "NonceStore",
    "ChannelLinkingService",
    "LinkInitiationService",
    "StripeService",
    "StripeWebhookHandler",
    "SignupOrchestrator",
    "LoginService",
    "PlanCatalogService",
    "UsageService",
]
