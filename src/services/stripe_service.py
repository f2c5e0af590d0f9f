"""Stripe payment processing service.

Covers the billing side of signup and the subscription mirror:
- creates the Stripe customer for a new user and waits for it to be synced
  into ``stripe_customers`` by the customer.* webhooks
- falls back to asking Stripe directly when the sync does not show up in time
- creates the optional trial subscription with an idempotency key
- upserts the local ``subscriptions`` row, keyed by user id
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditEventType, AuditTrail, redact_email
from core.config import Settings, get_settings
from core.exceptions import NotFoundError
from models.subscription import StripeCustomer, Subscription, SubscriptionStatus, Tier
from models.user import User

logger = logging.getLogger(__name__)


def as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a Stripe object (or a dict already)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields like ``customer`` are either an id or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return as_dict(value).get("id")


def _first_item(subscription_data: Dict[str, Any]) -> Dict[str, Any]:
    items = subscription_data.get("items") or {}
    data = items.get("data") or []
    return as_dict(data[0]) if data else {}


class StripeService:
    """Service for handling Stripe customer and subscription operations."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditTrail()
        self._stripe = None

    def _get_stripe(self):
        """Get Stripe client (lazy initialization)."""
        if not self._stripe:
            stripe.api_key = self.settings.STRIPE_SECRET_KEY
            self._stripe = stripe
        return self._stripe

    # Customers

    async def create_customer(self, email: str, user_id: str) -> str:
        """Create the Stripe customer for a new user and return its id."""
        client = self._get_stripe()
        try:
            customer = as_dict(client.Customer.create(
                email=email,
                metadata={"user_id": user_id},
                idempotency_key=f"signup-customer-{user_id}",
            ))
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating customer for {redact_email(email)}: {e}")
            raise

        self.audit.record(
            AuditEventType.BILLING_CUSTOMER,
            "stripe_customer",
            "create",
            user_id=user_id,
            resource_id=customer["id"],
            email=email,
        )
        return customer["id"]

    async def is_customer_synced(self, customer_id: str) -> bool:
        result = await self.db.execute(
            select(StripeCustomer.id).where(
                StripeCustomer.id == customer_id,
                StripeCustomer.deleted.is_(False),
            )
        )
        return result.scalar_one_or_none() is not None

    async def wait_for_customer_sync(
        self,
        customer_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> bool:
        """Poll the local mirror until the customer shows up or ``timeout`` passes.

        Blocks the caller; returns False on timeout.
        """
        timeout = self.settings.STRIPE_SYNC_TIMEOUT_SECONDS if timeout is None else timeout
        interval = self.settings.STRIPE_SYNC_INTERVAL_SECONDS if interval is None else interval

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempts = 0
        while True:
            attempts += 1
            if await self.is_customer_synced(customer_id):
                logger.info(f"Customer {customer_id} synced after {attempts} checks")
                return True
            if loop.time() >= deadline:
                logger.warning(f"Customer {customer_id} not synced after {timeout}s ({attempts} checks)")
                return False
            await asyncio.sleep(interval)

    async def find_customer_in_provider(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Ask Stripe directly for a customer; None when missing or deleted."""
        client = self._get_stripe()
        try:
            customer = as_dict(client.Customer.retrieve(customer_id))
        except stripe.StripeError as e:
            logger.warning(f"Could not retrieve customer {customer_id} from Stripe: {e}")
            return None
        if not customer or customer.get("deleted"):
            return None
        return customer

    async def upsert_customer(self, customer: Dict[str, Any]) -> StripeCustomer:
        """Write a customer into the local mirror."""
        record = await self.db.get(StripeCustomer, customer["id"])
        if record is None:
            record = StripeCustomer(
                id=customer["id"],
                email=customer.get("email"),
                deleted=bool(customer.get("deleted", False)),
                created_at=from_timestamp(customer.get("created")) or datetime.utcnow(),
            )
            self.db.add(record)
        else:
            record.email = customer.get("email", record.email)
            record.deleted = bool(customer.get("deleted", False))
        await self.db.commit()
        return record

    async def mark_customer_deleted(self, customer_id: str) -> None:
        record = await self.db.get(StripeCustomer, customer_id)
        if record is None:
            logger.warning(f"Deleted customer {customer_id} was never mirrored")
            return
        record.deleted = True
        await self.db.commit()

    async def attach_customer_to_user(self, user_id: str, customer_id: str) -> bool:
        """Store the billing customer reference on the user."""
        user = await self.db.get(User, user_id)
        if user is None:
            logger.error(f"Cannot attach customer {customer_id}: user {user_id} not found")
            return False
        user.stripe_customer_id = customer_id
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.error(f"Customer {customer_id} is already attached to another user")
            return False
        return True

    async def link_customer_to_user(self, user_id: str, customer: Dict[str, Any]) -> bool:
        """Manual link used when the webhook sync did not arrive in time."""
        await self.upsert_customer(customer)
        linked = await self.attach_customer_to_user(user_id, customer["id"])
        self.audit.record(
            AuditEventType.BILLING_CUSTOMER,
            "stripe_customer",
            "manual_link",
            success=linked,
            user_id=user_id,
            resource_id=customer["id"],
        )
        return linked

    # Subscriptions

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_tier_for_price(self, price_id: Optional[str]) -> Optional[Tier]:
        if not price_id:
            return None
        result = await self.db.execute(select(Tier).where(Tier.stripe_price_id == price_id))
        return result.scalar_one_or_none()

    async def create_subscription_with_trial(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        trial_days: int,
        idempotency_key: str,
    ) -> Optional[Subscription]:
        """Start a trial subscription and mirror it locally.

        The idempotency key makes a retried signup reuse the first Stripe
        subscription instead of creating another.
        """
        client = self._get_stripe()
        try:
            stripe_sub = client.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                trial_period_days=trial_days,
                metadata={"user_id": user_id},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating trial subscription for user {user_id}: {e}")
            raise

        logger.info(f"Created trial subscription for user {user_id} ({trial_days} days)")
        return await self.upsert_subscription(as_dict(stripe_sub))

    async def upsert_subscription(self, subscription_data: Dict[str, Any]) -> Optional[Subscription]:
        """Mirror a Stripe subscription into the user's single subscription row.

        Missing user metadata, unknown users, unknown statuses and prices with
        no matching tier are logged and leave the database untouched.
        """
        stripe_subscription_id = subscription_data.get("id")
        metadata = subscription_data.get("metadata") or {}
        user_id = metadata.get("user_id")
        if not user_id:
            logger.error(f"Subscription {stripe_subscription_id} has no user_id metadata")
            return None

        try:
            status = SubscriptionStatus(subscription_data.get("status"))
        except ValueError:
            logger.error(f"Subscription {stripe_subscription_id} has unknown status {subscription_data.get('status')!r}")
            return None

        item = _first_item(subscription_data)
        price_id = as_dict(item.get("price")).get("id")
        tier = await self.get_tier_for_price(price_id)
        if tier is None:
            logger.error(f"No tier for price {price_id} on subscription {stripe_subscription_id}")
            return None

        user = await self.db.get(User, user_id)
        if user is None:
            logger.error(f"Subscription {stripe_subscription_id} references unknown user {user_id}")
            return None

        period_start = subscription_data.get("current_period_start") or item.get("current_period_start")
        period_end = subscription_data.get("current_period_end") or item.get("current_period_end")

        subscription = await self.get_subscription(user_id)
        if subscription is None:
            subscription = Subscription(user_id=user_id, status=status)
            self.db.add(subscription)

        subscription.tier_id = tier.id
        subscription.status = status
        subscription.stripe_customer_id = _object_id(subscription_data.get("customer"))
        subscription.stripe_subscription_id = stripe_subscription_id
        subscription.cancel_at_period_end = bool(subscription_data.get("cancel_at_period_end", False))
        subscription.current_period_start = from_timestamp(period_start)
        subscription.current_period_end = from_timestamp(period_end)
        subscription.trial_end = from_timestamp(subscription_data.get("trial_end"))
        subscription.canceled_at = from_timestamp(subscription_data.get("canceled_at"))

        await self.db.commit()
        self.audit.record(
            AuditEventType.SUBSCRIPTION_SYNC,
            "subscription",
            "upsert",
            user_id=user_id,
            resource_id=stripe_subscription_id,
            status=status.value,
            tier=tier.slug,
        )
        return subscription

    async def mark_subscription_canceled(self, subscription_data: Dict[str, Any]) -> Optional[Subscription]:
        """Status update only; the row is kept."""
        stripe_subscription_id = subscription_data.get("id")
        result = await self.db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            user_id = (subscription_data.get("metadata") or {}).get("user_id")
            subscription = await self.get_subscription(user_id) if user_id else None
        if subscription is None:
            logger.warning(f"Subscription not found for Stripe ID {stripe_subscription_id}")
            return None

        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = (
            from_timestamp(subscription_data.get("canceled_at"))
            or from_timestamp(subscription_data.get("ended_at"))
            or subscription.canceled_at
            or datetime.utcnow()
        )
        await self.db.commit()
        logger.info(f"Subscription canceled: {stripe_subscription_id} (user {subscription.user_id})")
        return subscription

    async def retrieve_subscription(self, stripe_subscription_id: str) -> Dict[str, Any]:
        client = self._get_stripe()
        try:
            return as_dict(client.Subscription.retrieve(stripe_subscription_id))
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving subscription {stripe_subscription_id}: {e}")
            raise

    async def _set_cancel_at_period_end(self, user_id: str, cancel: bool) -> Subscription:
        subscription = await self.get_subscription(user_id)
        if subscription is None or not subscription.stripe_subscription_id:
            raise NotFoundError("No subscription found")

        client = self._get_stripe()
        try:
            stripe_sub = client.Subscription.modify(
                subscription.stripe_subscription_id,
                cancel_at_period_end=cancel,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error updating subscription {subscription.stripe_subscription_id}: {e}")
            raise

        updated = await self.upsert_subscription(as_dict(stripe_sub))
        if updated is None:
            # Keep the local flag in step even when the mirror could not be refreshed
            subscription.cancel_at_period_end = cancel
            await self.db.commit()
            return subscription
        return updated

    async def cancel_subscription(self, user_id: str) -> Subscription:
        """Cancel at the end of the current period."""
        return await self._set_cancel_at_period_end(user_id, True)

    async def reactivate_subscription(self, user_id: str) -> Subscription:
        return await self._set_cancel_at_period_end(user_id, False)

    async def create_checkout_session(self, user: User, price_id: str, trial_days: int = 0) -> Dict[str, Any]:
        """Create a Stripe checkout session for a subscription."""
        client = self._get_stripe()

        checkout_params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{self.settings.FRONTEND_URL}/dashboard?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.settings.FRONTEND_URL}/pricing?checkout=canceled",
            "metadata": {"user_id": user.id},
            "subscription_data": {"metadata": {"user_id": user.id}},
        }
        if trial_days > 0:
            checkout_params["subscription_data"]["trial_period_days"] = trial_days
            checkout_params["payment_method_collection"] = "if_required"

        if user.stripe_customer_id:
            checkout_params["customer"] = user.stripe_customer_id
        else:
            checkout_params["customer_email"] = user.email

        try:
            session = as_dict(client.checkout.Session.create(**checkout_params))
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session: {e}")
            raise

        logger.info(f"Created checkout session {session.get('id')} for user {user.id}")
        return {"checkout_url": session.get("url"), "session_id": session.get("id")}
