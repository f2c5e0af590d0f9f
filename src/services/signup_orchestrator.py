"""Signup orchestration.

Signup touches three systems that share no transaction: the identity store,
Stripe, and the channel-link tables. It runs as a saga. Each step after
identity creation commits on its own and carries a fallback, and the last
step always produces a redirect, however many earlier steps degraded.

The flow ends by raising ``SignupRedirect``. Anything else that escapes is
turned into a generic ``FormState``, so callers only ever see a form state or
a redirect.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditEventType, AuditTrail
from core.config import Settings, get_settings
from core.exceptions import DuplicateIdentityError, IdentityProviderError, SignupRedirect
from models.user import SignupSource
from schemas.auth import FieldError, FormState, SignupForm
from services.channel_linking import (
    ChannelLinkingService,
    LinkingResult,
    UserState,
    determine_strategy,
)
from services.identity import IdentityProvider
from services.redirects import (
    RedirectPaths,
    build_dashboard_redirect_url,
    build_login_redirect_url,
    build_signup_complete_redirect_url,
)
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)

GENERIC_ERROR = "An unexpected error occurred. Please try again."
ACCOUNT_EXISTS = "account_exists"


def form_errors(exc: PydanticValidationError) -> FormState:
    """Field-level form state from a pydantic validation failure."""
    errors = []
    for error in exc.errors():
        field_name = str(error["loc"][0]) if error.get("loc") else "general"
        message = error.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append(FieldError(field=field_name, message=message))
    return FormState(message="Please correct the highlighted fields", errors=errors)


@dataclass
class SignupContext:
    form: SignupForm
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_synced: bool = False
    customer_linked: bool = False
    linking_result: Optional[LinkingResult] = None
    degraded: List[str] = field(default_factory=list)

    @property
    def has_channel_params(self) -> bool:
        return self.form.present


StepAction = Callable[[SignupContext], Awaitable[None]]
StepFallback = Callable[[SignupContext, Exception], Awaitable[None]]


@dataclass
class SagaStep:
    name: str
    action: StepAction
    fallback: Optional[StepFallback] = None


class SignupOrchestrator:
    """Runs the signup saga for one form submission."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        audit: Optional[AuditTrail] = None,
        identity: Optional[IdentityProvider] = None,
        stripe_service: Optional[StripeService] = None,
        linking: Optional[ChannelLinkingService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditTrail()
        self.identity = identity or IdentityProvider(db)
        self.stripe_service = stripe_service or StripeService(db, self.settings, self.audit)
        self.linking = linking or ChannelLinkingService(db, self.audit)

    def steps(self) -> List[SagaStep]:
        """Best-effort steps run after the identity exists, in order."""
        return [
            SagaStep("attribution", self._tag_attribution, self._attribution_failed),
            SagaStep("billing", self._setup_billing, self._billing_failed),
            SagaStep("channel_link", self._link_channel, self._channel_link_failed),
        ]

    async def sign_up(self, data: Mapping[str, Any]) -> FormState:
        """Run signup. Returns a FormState or raises SignupRedirect."""
        try:
            validated = self._validate(data)
            if isinstance(validated, FormState):
                return validated

            ctx = SignupContext(form=validated)
            self.audit.step(
                "SIGNUP_START",
                email=ctx.form.email,
                channel=ctx.form.channel,
                link=ctx.form.link,
            )

            await self._reject_existing_account(ctx)
            failure = await self._create_identity(ctx)
            if failure is not None:
                return failure

            await self._run_steps(ctx, self.steps())

            url = self._final_redirect(ctx)
            self.audit.step(
                "SIGNUP_COMPLETE",
                user_id=ctx.user_id,
                degraded=ctx.degraded,
                channel_linked=bool(ctx.linking_result and ctx.linking_result.success),
            )
            raise SignupRedirect(url, user_id=ctx.user_id)
        except SignupRedirect:
            raise
        except Exception as e:
            logger.error(f"Unexpected signup failure: {e}", exc_info=True)
            return FormState.failure(GENERIC_ERROR)

    def _validate(self, data: Mapping[str, Any]) -> Union[SignupForm, FormState]:
        try:
            return SignupForm.model_validate(dict(data))
        except PydanticValidationError as e:
            return form_errors(e)

    def _login_redirect(self, ctx: SignupContext) -> str:
        return build_login_redirect_url(
            channel=ctx.form.channel,
            link=ctx.form.link,
            message=ACCOUNT_EXISTS,
            locale=ctx.form.locale,
            settings=self.settings,
        )

    async def _reject_existing_account(self, ctx: SignupContext) -> None:
        """Send known emails to login with their channel params intact."""
        try:
            exists = await self.identity.email_exists(ctx.form.email)
        except SQLAlchemyError as e:
            # The unique email index still guards creation
            await self.db.rollback()
            logger.warning(f"Duplicate-account pre-check failed, continuing: {e}")
            return
        if exists:
            self.audit.step("SIGNUP_DUPLICATE", email=ctx.form.email)
            raise SignupRedirect(self._login_redirect(ctx))

    async def _create_identity(self, ctx: SignupContext) -> Optional[FormState]:
        try:
            user = await self.identity.sign_up(
                ctx.form.email,
                ctx.form.password,
                first_name=ctx.form.first_name,
                last_name=ctx.form.last_name,
            )
        except DuplicateIdentityError:
            # Lost the race with a concurrent signup for the same email
            raise SignupRedirect(self._login_redirect(ctx))
        except IdentityProviderError as e:
            self.audit.record(
                AuditEventType.USER_REGISTRATION,
                "user",
                "create",
                success=False,
                reason=e.message,
                email=ctx.form.email,
            )
            return FormState.failure(e.message)

        ctx.user_id = user.id

        self.audit.record(
            AuditEventType.USER_REGISTRATION,
            "user",
            "create",
            user_id=ctx.user_id,
            email=ctx.form.email,
            source=SignupSource.CHAT if ctx.has_channel_params else SignupSource.WEBSITE,
        )
        return None

    async def _run_steps(self, ctx: SignupContext, steps: List[SagaStep]) -> None:
        for step in steps:
            try:
                await step.action(ctx)
            except Exception as e:
                ctx.degraded.append(step.name)
                await self.db.rollback()
                logger.warning(f"Signup step '{step.name}' failed for user {ctx.user_id}: {e}")
                if step.fallback is None:
                    continue
                try:
                    await step.fallback(ctx, e)
                except Exception as fallback_error:
                    await self.db.rollback()
                    logger.error(f"Fallback for signup step '{step.name}' failed: {fallback_error}")

    # Attribution

    async def _tag_attribution(self, ctx: SignupContext) -> None:
        source = SignupSource.CHAT if ctx.has_channel_params else SignupSource.WEBSITE
        await self.identity.set_signup_source(ctx.user_id, source)

    async def _attribution_failed(self, ctx: SignupContext, error: Exception) -> None:
        logger.warning(f"Signup source not recorded for user {ctx.user_id}; continuing")

    # Billing

    async def _setup_billing(self, ctx: SignupContext) -> None:
        ctx.customer_id = await self.stripe_service.create_customer(ctx.form.email, ctx.user_id)

        ctx.customer_synced = await self.stripe_service.wait_for_customer_sync(ctx.customer_id)
        if ctx.customer_synced:
            ctx.customer_linked = await self.stripe_service.attach_customer_to_user(
                ctx.user_id, ctx.customer_id
            )
            await self._start_trial(ctx)
        else:
            await self._link_customer_after_timeout(ctx)

    async def _start_trial(self, ctx: SignupContext) -> None:
        price_id = self.settings.DEFAULT_TRIAL_PRICE_ID
        if not price_id:
            return
        idempotency_key = f"signup-sub-{ctx.user_id}-{int(time.time() * 1000)}"
        try:
            await self.stripe_service.create_subscription_with_trial(
                customer_id=ctx.customer_id,
                price_id=price_id,
                user_id=ctx.user_id,
                trial_days=self.settings.DEFAULT_TRIAL_DAYS,
                idempotency_key=idempotency_key,
            )
        except Exception as e:
            # Webhooks or a later checkout can still create the subscription
            await self.db.rollback()
            logger.error(f"Trial subscription not created for user {ctx.user_id}: {e}")

    async def _link_customer_after_timeout(self, ctx: SignupContext) -> None:
        customer = await self.stripe_service.find_customer_in_provider(ctx.customer_id)
        if customer is None:
            self.audit.warn(
                "STRIPE_CUSTOMER_UNLINKED",
                user_id=ctx.user_id,
                customer_id=ctx.customer_id,
                note="needs manual or background reconciliation",
            )
            return
        ctx.customer_linked = await self.stripe_service.link_customer_to_user(ctx.user_id, customer)

    async def _billing_failed(self, ctx: SignupContext, error: Exception) -> None:
        self.audit.record(
            AuditEventType.BILLING_CUSTOMER,
            "stripe_customer",
            "signup_setup",
            success=False,
            user_id=ctx.user_id,
            reason=str(error),
            customer_id=ctx.customer_id,
        )

    # Channel linking

    async def _link_channel(self, ctx: SignupContext) -> None:
        if not ctx.has_channel_params:
            return
        ctx.linking_result = await self.linking.link_channel_with_nonce(
            ctx.user_id, ctx.form.channel, ctx.form.link
        )

    async def _channel_link_failed(self, ctx: SignupContext, error: Exception) -> None:
        ctx.linking_result = LinkingResult(False, "Channel linking failed", "error")

    # Redirect

    def _final_redirect(self, ctx: SignupContext) -> str:
        form = ctx.form
        try:
            strategy = determine_strategy(UserState.NEW_USER, ctx.has_channel_params, ctx.linking_result)
            if strategy.redirect_path == RedirectPaths.DASHBOARD:
                return build_dashboard_redirect_url(
                    channel=form.channel,
                    channel_linked=True,
                    skip_onboarding=strategy.skip_onboarding,
                    locale=form.locale,
                    settings=self.settings,
                )
            return build_signup_complete_redirect_url(
                channel=form.channel,
                link=form.link,
                channel_linked=False if ctx.has_channel_params else None,
                channel_error=strategy.channel_error,
                show_fallback=bool(strategy.fallback_options),
                locale=form.locale,
                settings=self.settings,
            )
        except Exception as e:
            logger.error(f"Could not build signup redirect, using default: {e}")
            return RedirectPaths.SIGNUP_COMPLETE
