"""Stripe webhook verification and dispatch.

Events are verified against the shared webhook secret before anything is
read from them. After that every event is acknowledged: handler failures are
logged per event so Stripe does not keep retrying a payload we cannot use.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditEventType, AuditTrail
from core.config import Settings, get_settings
from core.exceptions import InternalServerError, WebhookSignatureError
from services.stripe_service import StripeService, as_dict

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class StripeWebhookHandler:
    """Reconcile local billing state from Stripe events."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        audit: Optional[AuditTrail] = None,
        stripe_service: Optional[StripeService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditTrail()
        self.stripe_service = stripe_service or StripeService(db, self.settings, self.audit)

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the stripe-signature header and construct the event.

        Raises WebhookSignatureError for a missing or bad signature. A
        correctly signed body that is not a Stripe event raises
        InternalServerError.
        """
        if not signature:
            self._reject("missing signature")
            raise WebhookSignatureError("Missing signature")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            self._reject("payload is not utf-8")
            raise WebhookSignatureError() from e

        try:
            event = stripe.Webhook.construct_event(
                body,
                signature,
                self.settings.STRIPE_WEBHOOK_SECRET,
                self.settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as e:
            self._reject(str(e))
            raise WebhookSignatureError() from e
        except ValueError as e:
            logger.error(f"Signed Stripe webhook could not be decoded: {e}")
            raise InternalServerError("Invalid payload") from e

        event = as_dict(event)
        if not event.get("type"):
            logger.error(f"Signed Stripe webhook {event.get('id')} has no event type")
            raise InternalServerError("Invalid payload")
        return event

    def _reject(self, reason: str) -> None:
        self.audit.record(
            AuditEventType.SECURITY_VIOLATION,
            "stripe_webhook",
            "verify",
            success=False,
            reason=reason,
        )

    def _handlers(self) -> Dict[str, Handler]:
        return {
            "customer.created": self._handle_customer_upsert,
            "customer.updated": self._handle_customer_upsert,
            "customer.deleted": self._handle_customer_deleted,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "customer.subscription.trial_will_end": self._handle_trial_will_end,
            "checkout.session.completed": self._handle_checkout_completed,
            "invoice.paid": self._handle_invoice,
            "invoice.payment_succeeded": self._handle_invoice,
            "invoice.payment_failed": self._handle_invoice,
        }

    async def handle(self, event: Dict[str, Any]) -> bool:
        """Dispatch one verified event. Returns False when its handler failed."""
        event_type = event.get("type")
        event_data = as_dict((event.get("data") or {}).get("object"))

        handler = self._handlers().get(event_type)
        if handler is None:
            logger.debug(f"Unhandled webhook event type: {event_type}")
            return True

        try:
            await handler(event_data)
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error handling Stripe event {event.get('id')} ({event_type}): {e}", exc_info=True)
            return False
        return True

    async def _handle_customer_upsert(self, customer: Dict[str, Any]) -> None:
        await self.stripe_service.upsert_customer(customer)
        logger.info(f"Customer {customer.get('id')} synced")

    async def _handle_customer_deleted(self, customer: Dict[str, Any]) -> None:
        await self.stripe_service.mark_customer_deleted(customer["id"])

    async def _handle_subscription_changed(self, subscription_data: Dict[str, Any]) -> None:
        await self.stripe_service.upsert_subscription(subscription_data)

    async def _handle_subscription_deleted(self, subscription_data: Dict[str, Any]) -> None:
        await self.stripe_service.mark_subscription_canceled(subscription_data)

    async def _handle_trial_will_end(self, subscription_data: Dict[str, Any]) -> None:
        user_id = (subscription_data.get("metadata") or {}).get("user_id")
        logger.info(f"Trial ending soon for subscription {subscription_data.get('id')} (user {user_id})")

    async def _handle_checkout_completed(self, session_data: Dict[str, Any]) -> None:
        if session_data.get("mode") != "subscription":
            logger.debug(f"Ignoring checkout session {session_data.get('id')} in mode {session_data.get('mode')}")
            return
        subscription_id = session_data.get("subscription")
        if not subscription_id:
            logger.error(f"Checkout session {session_data.get('id')} has no subscription")
            return
        subscription_data = await self.stripe_service.retrieve_subscription(subscription_id)
        await self.stripe_service.upsert_subscription(subscription_data)

    async def _handle_invoice(self, invoice_data: Dict[str, Any]) -> None:
        subscription_id = invoice_data.get("subscription")
        if subscription_id is None:
            # Newer API versions nest it under parent.subscription_details
            details = (invoice_data.get("parent") or {}).get("subscription_details") or {}
            subscription_id = details.get("subscription")
        if not subscription_id:
            logger.debug(f"Invoice {invoice_data.get('id')} is not for a subscription")
            return
        if not isinstance(subscription_id, str):
            subscription_id = as_dict(subscription_id).get("id")
        subscription_data = await self.stripe_service.retrieve_subscription(subscription_id)
        await self.stripe_service.upsert_subscription(subscription_data)
