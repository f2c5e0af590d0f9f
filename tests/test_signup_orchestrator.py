"""Tests for the signup saga."""

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest
import stripe
from sqlalchemy import func, select

from core.audit import AuditEventType
from core.exceptions import SignupRedirect
from models.channel_link import UserChannel
from models.subscription import StripeCustomer, Subscription, SubscriptionStatus
from models.user import SignupSource, User
from services.identity import IdentityProvider
from services.nonce_store import NonceStore
from services.signup_orchestrator import GENERIC_ERROR, SignupOrchestrator

from factories import BASIC_PRICE_ID, CUSTOMER_ID, TEST_PASSWORD, subscription_payload


@pytest.fixture
def orchestrator(db_session, settings, audit, stripe_mock):
    return SignupOrchestrator(db_session, settings, audit)


def form(**overrides):
    data = {
        "email": "new@example.com",
        "password": TEST_PASSWORD,
        "first_name": "Nadia",
        "last_name": "Rossi",
    }
    data.update(overrides)
    return data


async def sign_up(orchestrator, data) -> SignupRedirect:
    with pytest.raises(SignupRedirect) as exc_info:
        await orchestrator.sign_up(data)
    return exc_info.value


async def load_user(db_session, email) -> User:
    result = await db_session.execute(
        select(User).where(User.email == email).execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestValidation:
    async def test_field_errors_are_returned(self, orchestrator):
        state = await orchestrator.sign_up(form(email="nope", password="short"))

        assert not state.success
        fields = {error.field for error in state.errors}
        assert fields == {"email", "password"}
        messages = {error.message for error in state.errors}
        assert "Please enter a valid email address" in messages

    async def test_password_needs_mixed_characters(self, orchestrator):
        state = await orchestrator.sign_up(form(password="alllowercase1"))
        assert [error.field for error in state.errors] == ["password"]


class TestExistingAccount:
    async def test_known_email_goes_to_login_with_params(self, orchestrator, db_session, user):
        redirect = await sign_up(orchestrator, form(email="Alice@Example.com", channel="telegram", link="x y"))

        assert redirect.url == "/login?channel=telegram&link=x+y&message=account_exists"
        assert redirect.user_id is None
        count = await db_session.execute(select(func.count()).select_from(User))
        assert count.scalar_one() == 1

    async def test_lost_race_gives_the_same_redirect(self, orchestrator, user):
        with patch.object(IdentityProvider, "email_exists", AsyncMock(return_value=False)):
            redirect = await sign_up(orchestrator, form(email="alice@example.com", channel="telegram", link="abc"))

        assert redirect.url == "/login?channel=telegram&link=abc&message=account_exists"

    async def test_failed_precheck_does_not_block_signup(self, orchestrator, db_session):
        from sqlalchemy.exc import OperationalError

        failing = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db gone")))
        with patch.object(IdentityProvider, "email_exists", failing):
            redirect = await sign_up(orchestrator, form())

        assert redirect.user_id is not None
        assert (await load_user(db_session, "new@example.com")).id == redirect.user_id


class TestWebsiteSignup:
    async def test_redirects_to_signup_complete(self, orchestrator, db_session):
        redirect = await sign_up(orchestrator, form(email="New@Example.com"))

        assert redirect.url == "/signup/complete"
        created = await load_user(db_session, "new@example.com")
        assert created.id == redirect.user_id
        assert created.signup_source == SignupSource.WEBSITE

    async def test_locale_prefix(self, orchestrator):
        redirect = await sign_up(orchestrator, form(locale="it"))
        assert redirect.url == "/it/signup/complete"

    async def test_customer_attached_when_sync_arrives(self, orchestrator, db_session, stripe_mock):
        db_session.add(StripeCustomer(id=CUSTOMER_ID, email="new@example.com"))
        await db_session.commit()

        await sign_up(orchestrator, form())

        assert (await load_user(db_session, "new@example.com")).stripe_customer_id == CUSTOMER_ID
        stripe_mock.Customer.retrieve.assert_not_called()

    async def test_sync_timeout_links_customer_manually(self, orchestrator, db_session, stripe_mock, audit):
        redirect = await sign_up(orchestrator, form())

        assert redirect.url == "/signup/complete"
        stripe_mock.Customer.retrieve.assert_called_once_with(CUSTOMER_ID)
        assert (await load_user(db_session, "new@example.com")).stripe_customer_id == CUSTOMER_ID
        manual = [e for e in audit.of_type(AuditEventType.BILLING_CUSTOMER) if e.action == "manual_link"]
        assert manual and manual[0].success

    async def test_sync_timeout_with_customer_missing_upstream(self, orchestrator, db_session, stripe_mock):
        stripe_mock.Customer.retrieve.side_effect = stripe.StripeError("no such customer")

        redirect = await sign_up(orchestrator, form())

        assert redirect.user_id is not None
        assert (await load_user(db_session, "new@example.com")).stripe_customer_id is None

    async def test_billing_outage_still_redirects(self, orchestrator, db_session, stripe_mock):
        stripe_mock.Customer.create.side_effect = stripe.StripeError("stripe down")

        redirect = await sign_up(orchestrator, form())

        assert redirect.url == "/signup/complete"
        assert (await load_user(db_session, "new@example.com")).stripe_customer_id is None

    async def test_trial_subscription_created(self, db_session, settings, audit, stripe_mock):
        db_session.add(StripeCustomer(id=CUSTOMER_ID, email="new@example.com"))
        await db_session.commit()
        trial_settings = settings.model_copy(update={"DEFAULT_TRIAL_PRICE_ID": BASIC_PRICE_ID})
        orchestrator = SignupOrchestrator(db_session, trial_settings, audit)
        stripe_mock.Subscription.create.side_effect = lambda **kwargs: subscription_payload(
            kwargs["metadata"]["user_id"]
        )

        redirect = await sign_up(orchestrator, form())

        kwargs = stripe_mock.Subscription.create.call_args.kwargs
        assert kwargs["idempotency_key"].startswith(f"signup-sub-{redirect.user_id}-")
        assert kwargs["trial_period_days"] == trial_settings.DEFAULT_TRIAL_DAYS
        result = await db_session.execute(select(Subscription).where(Subscription.user_id == redirect.user_id))
        assert result.scalar_one().status == SubscriptionStatus.TRIALING

    async def test_unexpected_failure_becomes_generic_error(self, orchestrator):
        with patch.object(IdentityProvider, "sign_up", AsyncMock(side_effect=RuntimeError("boom"))):
            state = await orchestrator.sign_up(form())

        assert state.message == GENERIC_ERROR
        assert [error.field for error in state.errors] == ["general"]


class TestChatSignup:
    async def test_registration_link_skips_onboarding(self, orchestrator, db_session):
        record = await NonceStore(db_session).create("telegram", ttl_seconds=600, link="@new_chat")

        redirect = await sign_up(orchestrator, form(channel="telegram", link=record.nonce))

        assert redirect.url == "/dashboard?channel=telegram&channelLinked=true&skipOnboarding=true"
        result = await db_session.execute(select(UserChannel).where(UserChannel.user_id == redirect.user_id))
        assert result.scalar_one().link == "@new_chat"
        assert (await load_user(db_session, "new@example.com")).signup_source == SignupSource.CHAT

    async def test_expired_link_keeps_account_and_reports_error(self, orchestrator, db_session):
        record = await NonceStore(db_session).create("telegram", ttl_seconds=-1, link="@new_chat")

        redirect = await sign_up(orchestrator, form(channel="telegram", link=record.nonce))

        parts = urlsplit(redirect.url)
        assert parts.path == "/signup/complete"
        assert parse_qs(parts.query) == {
            "channel": ["telegram"],
            "link": [record.nonce],
            "channelLinked": ["false"],
            "channel_error": ["true"],
            "show_fallback": ["true"],
        }
        assert redirect.user_id is not None
        count = await db_session.execute(select(func.count()).select_from(UserChannel))
        assert count.scalar_one() == 0

    async def test_garbage_link_param_is_preserved(self, orchestrator):
        redirect = await sign_up(orchestrator, form(channel="telegram", link="<not a nonce>"))

        query = parse_qs(urlsplit(redirect.url).query)
        assert query["link"] == ["<not a nonce>"]
        assert query["channel_error"] == ["true"]

    async def test_link_failure_does_not_undo_billing(self, orchestrator, db_session):
        db_session.add(StripeCustomer(id=CUSTOMER_ID, email="new@example.com"))
        await db_session.commit()

        await sign_up(orchestrator, form(channel="whatsapp", link="5f0c6a52-3c1e-4e4b-9d7a-0c8f2d1e9b3a"))

        assert (await load_user(db_session, "new@example.com")).stripe_customer_id == CUSTOMER_ID
