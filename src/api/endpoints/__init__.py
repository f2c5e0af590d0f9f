"""API endpoints."""

__all__ = [
    "auth",
    "billing",
    "link",
    "plans",
    "stripe_webhooks",
    "usage",
]
