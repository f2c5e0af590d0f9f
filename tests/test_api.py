"""HTTP-level tests for the link, auth, billing and webhook endpoints."""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from models.channel_link import UserChannel
from models.subscription import StripeCustomer, Subscription, SubscriptionStatus, Tier
from models.usage import UsageRecord
from services.channel_linking import ChannelLinkingService
from services.link_poller import ChannelSpec, LinkApiClient, LinkStatusPoller, VerificationStatus
from services.nonce_store import NonceStore
from services.stripe_service import StripeService

from factories import CUSTOMER_ID, TEST_PASSWORD, event, sign_webhook, subscription_payload


async def count(db_session, model) -> int:
    return (await db_session.execute(select(func.count()).select_from(model))).scalar_one()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestLinkEndpoints:
    async def test_start_requires_authentication(self, client):
        response = await client.post("/api/link/start", json={"channel_id": "telegram"})
        assert response.status_code == 401

    async def test_full_verification_round_trip(self, client, auth_headers, bot_headers):
        start = await client.post("/api/link/start", json={"channel_id": "telegram"}, headers=auth_headers)
        assert start.status_code == 200
        body = start.json()
        nonce = body["nonce"]
        assert body["deepLink"] == f"https://t.me/anthon_bot?start={nonce}"
        assert body["command"] == f"/link {nonce}"

        pending = await client.get(f"/api/link/status/{nonce}", headers=auth_headers)
        assert pending.json() == {"status": "pending"}

        confirm = await client.post(
            "/api/link/confirm", json={"nonce": nonce, "link": "@alice_chat"}, headers=bot_headers
        )
        assert confirm.status_code == 200
        assert confirm.json()["success"] is True

        done = await client.get(f"/api/link/status/{nonce}", headers=auth_headers)
        assert done.json() == {"status": "done", "link": "@alice_chat"}

        channels = await client.get("/api/link/channels", headers=auth_headers)
        assert [(c["channel_id"], c["link"]) for c in channels.json()] == [("telegram", "@alice_chat")]

    async def test_confirm_twice_leaves_one_link(self, client, auth_headers, bot_headers, db_session):
        start = await client.post("/api/link/start", json={"channel_id": "telegram"}, headers=auth_headers)
        nonce = start.json()["nonce"]
        body = {"nonce": nonce, "link": "@alice_chat"}

        first = await client.post("/api/link/confirm", json=body, headers=bot_headers)
        second = await client.post("/api/link/confirm", json=body, headers=bot_headers)

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["reason"] == "used"
        assert await count(db_session, UserChannel) == 1

    async def test_two_tabs_polling_one_nonce_leave_one_link(
        self, client, auth_headers, bot_headers, session_maker, db_session, user
    ):
        user_id = user.id
        client.headers.update(auth_headers)
        started = (await client.post("/api/link/start", json={"channel_id": "telegram"})).json()
        await client.post(
            "/api/link/confirm", json={"nonce": started["nonce"], "link": "@alice_chat"}, headers=bot_headers
        )

        class SameNonceTab(LinkApiClient):
            async def start_link(self, channel_id):
                return started

        notified = []

        async def persist(channel_id, link):
            notified.append(link)
            async with session_maker() as session:
                await ChannelLinkingService(session).attach_user_channel(user_id, channel_id, link)

        tabs = [
            LinkStatusPoller(
                SameNonceTab("http://test", client=client),
                [ChannelSpec("telegram", mandatory=True)],
                on_verified=persist,
                poll_interval=0.01,
            )
            for _ in range(2)
        ]
        for tab in tabs:
            await tab.start_verification("telegram")
        states = [await tab.wait("telegram") for tab in tabs]

        assert [state.status for state in states] == [VerificationStatus.DONE] * 2
        assert notified == ["@alice_chat", "@alice_chat"]
        assert await count(db_session, UserChannel) == 1

    async def test_confirm_requires_bot_secret(self, client, auth_headers):
        start = await client.post("/api/link/start", json={"channel_id": "telegram"}, headers=auth_headers)
        response = await client.post(
            "/api/link/confirm",
            json={"nonce": start.json()["nonce"], "link": "@alice_chat"},
            headers={"x-bot-secret": "guess"},
        )
        assert response.status_code == 401

    async def test_expired_status_is_gone(self, client, auth_headers, db_session, user):
        record = await NonceStore(db_session).create("telegram", ttl_seconds=-1, user_id=user.id)

        response = await client.get(f"/api/link/status/{record.nonce}", headers=auth_headers)

        assert response.status_code == 410
        assert response.json()["status"] == "expired"

    async def test_unknown_channel_is_404(self, client, auth_headers):
        response = await client.post("/api/link/start", json={"channel_id": "signal"}, headers=auth_headers)
        assert response.status_code == 404
        assert "error" in response.json()

    @pytest.mark.parametrize("nonce", ["not-a-uuid", str(uuid.uuid4())])
    async def test_validate_rejects_bad_nonces(self, client, nonce):
        response = await client.post("/api/link/validate", json={"nonce": nonce, "channelId": "telegram"})
        assert response.status_code == 200
        assert response.json() == {"isValid": False}

    async def test_validate_accepts_live_nonce(self, client, db_session):
        record = await NonceStore(db_session).create("telegram", ttl_seconds=600, link="@new_chat")
        response = await client.post("/api/link/validate", json={"nonce": record.nonce, "channelId": "telegram"})
        assert response.json() == {"isValid": True}

    async def test_registration_link(self, client, bot_headers):
        body = {"channel_id": "telegram", "user_handle": "@new_chat"}
        first = await client.post("/api/link/registration", json=body, headers=bot_headers)
        second = await client.post("/api/link/registration", json=body, headers=bot_headers)

        assert first.status_code == 200
        assert first.json()["signup_url"].startswith("https://app.example.com/signup?link=")
        assert second.json()["nonce"] == first.json()["nonce"]


class TestAuthEndpoints:
    async def test_signup_from_chat_lands_on_dashboard_with_session(self, client, bot_headers, db_session):
        registration = await client.post(
            "/api/link/registration",
            json={"channel_id": "telegram", "user_handle": "@new_chat"},
            headers=bot_headers,
        )
        nonce = registration.json()["nonce"]

        response = await client.post("/api/auth/signup", data={
            "email": "new@example.com",
            "password": TEST_PASSWORD,
            "channel": "telegram",
            "link": nonce,
        })

        assert response.status_code == 303
        assert response.headers["location"] == "/dashboard?channel=telegram&channelLinked=true&skipOnboarding=true"
        assert "access_token" in response.cookies

        channels = await client.get("/api/link/channels")
        assert [c["link"] for c in channels.json()] == ["@new_chat"]

    async def test_signup_with_known_email_redirects_to_login(self, client, user):
        response = await client.post("/api/auth/signup", data={
            "email": "alice@example.com",
            "password": TEST_PASSWORD,
            "channel": "telegram",
            "link": "abc123",
        })

        assert response.status_code == 303
        assert response.headers["location"] == "/login?channel=telegram&link=abc123&message=account_exists"
        assert "access_token" not in response.cookies

    async def test_signup_validation_errors(self, client):
        response = await client.post("/api/auth/signup", data={"email": "bad", "password": "x"})

        assert response.status_code == 400
        assert {e["field"] for e in response.json()["errors"]} == {"email", "password"}

    async def test_login(self, client, user):
        response = await client.post("/api/auth/login", data={"email": "alice@example.com", "password": TEST_PASSWORD})
        assert response.status_code == 303
        assert response.headers["location"] == "/dashboard"
        assert "access_token" in response.cookies

    async def test_login_wrong_password(self, client, user):
        response = await client.post("/api/auth/login", data={"email": "alice@example.com", "password": "Wrong1234"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"


class TestStripeWebhookEndpoint:
    async def test_bad_signature_changes_nothing(self, client, db_session):
        payload = event("customer.created", {"id": CUSTOMER_ID})

        response = await client.post(
            "/api/stripe/webhooks",
            content=payload,
            headers={"stripe-signature": sign_webhook(payload, "whsec_wrong")},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}
        assert await count(db_session, StripeCustomer) == 0

    async def test_missing_signature(self, client):
        response = await client.post("/api/stripe/webhooks", content=event("customer.created", {"id": CUSTOMER_ID}))
        assert response.status_code == 400

    async def test_signed_body_that_is_not_an_event(self, client, settings, db_session):
        payload = "not json"

        response = await client.post(
            "/api/stripe/webhooks",
            content=payload,
            headers={"stripe-signature": sign_webhook(payload, settings.STRIPE_WEBHOOK_SECRET)},
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Invalid payload"}
        assert await count(db_session, StripeCustomer) == 0

    async def test_replayed_subscription_event(self, client, settings, db_session, user):
        payload = event("customer.subscription.created", subscription_payload(user.id))
        headers = {"stripe-signature": sign_webhook(payload, settings.STRIPE_WEBHOOK_SECRET)}

        for _ in range(2):
            response = await client.post("/api/stripe/webhooks", content=payload, headers=headers)
            assert response.status_code == 200
            assert response.json() == {"received": True}

        assert await count(db_session, Subscription) == 1

    async def test_handler_failure_is_still_acknowledged(self, client, settings, stripe_mock):
        stripe_mock.Subscription.retrieve.side_effect = RuntimeError("stripe down")
        payload = event("checkout.session.completed", {"id": "cs_1", "mode": "subscription", "subscription": "sub_x"})

        response = await client.post(
            "/api/stripe/webhooks",
            content=payload,
            headers={"stripe-signature": sign_webhook(payload, settings.STRIPE_WEBHOOK_SECRET)},
        )

        assert response.status_code == 200


class TestBillingEndpoints:
    async def test_plans_include_trial_annotation(self, client, stripe_mock):
        stripe_mock.Product.list.return_value = {"data": [
            {"id": "prod_basic", "name": "Basic", "metadata": {"trial_eligible": "true", "trial_days": "7"}},
            {"id": "prod_pro", "name": "Pro", "metadata": {}},
        ]}
        stripe_mock.Price.list.return_value = {"data": [
            {"id": "price_basic", "product": "prod_basic", "unit_amount": 900, "currency": "eur",
             "recurring": {"interval": "month"}, "metadata": {}},
            {"id": "price_pro", "product": "prod_pro", "unit_amount": 2900, "currency": "eur",
             "recurring": {"interval": "month"}, "metadata": {}},
        ]}

        response = await client.get("/api/plans")

        assert response.status_code == 200
        plans = {plan["id"]: plan for plan in response.json()}
        assert plans["prod_basic"]["trial_eligible"] is True
        assert plans["prod_basic"]["trial_days"] == 7
        assert plans["prod_basic"]["prices"][0]["interval"] == "month"
        assert plans["prod_pro"]["trial_eligible"] is False
        assert plans["prod_pro"]["trial_days"] is None

    async def test_cancel_and_reactivate(self, client, auth_headers, settings, stripe_mock, db_session, user):
        payload = subscription_payload(user.id, "active")
        await StripeService(db_session, settings).upsert_subscription(payload)

        stripe_mock.Subscription.modify.return_value = {**payload, "cancel_at_period_end": True}
        canceled = await client.post("/api/billing/cancel", headers=auth_headers)
        assert canceled.status_code == 200
        assert canceled.json()["cancel_at_period_end"] is True

        stripe_mock.Subscription.modify.return_value = payload
        reactivated = await client.post("/api/billing/reactivate", headers=auth_headers)
        assert reactivated.json()["cancel_at_period_end"] is False
        assert reactivated.json()["status"] == "active"

    async def test_cancel_without_subscription_is_404(self, client, auth_headers):
        response = await client.post("/api/billing/cancel", headers=auth_headers)
        assert response.status_code == 404

    async def test_usage_sums_current_period(self, client, auth_headers, db_session, user):
        user_id = user.id
        tier = (await db_session.execute(select(Tier).where(Tier.slug == "basic"))).scalar_one()
        period_start = datetime(2026, 1, 1)
        db_session.add(Subscription(
            user_id=user_id,
            tier_id=tier.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=period_start,
            current_period_end=period_start + timedelta(days=31),
        ))
        await db_session.commit()
        telegram = await ChannelLinkingService(db_session).attach_user_channel(user_id, "telegram", "@alice_chat")
        whatsapp = await ChannelLinkingService(db_session).attach_user_channel(user_id, "whatsapp", "+393331234567")
        db_session.add_all([
            UsageRecord(user_channel_id=telegram.id, period_start=period_start,
                        period_end=period_start + timedelta(days=31), tokens_used=1200, requests_used=10),
            UsageRecord(user_channel_id=whatsapp.id, period_start=period_start + timedelta(days=2),
                        period_end=period_start + timedelta(days=31), tokens_used=300, requests_used=4),
            UsageRecord(user_channel_id=telegram.id, period_start=period_start - timedelta(days=31),
                        period_end=period_start, tokens_used=9999, requests_used=99),
        ])
        await db_session.commit()

        response = await client.get("/api/user/usage", headers=auth_headers)

        assert response.status_code == 200
        usage = response.json()
        assert usage["tokens_used"] == 1500
        assert usage["requests_used"] == 14
        assert usage["max_tokens"] == 100000
        assert usage["tier"] == "basic"

    async def test_usage_without_subscription(self, client, auth_headers):
        response = await client.get("/api/user/usage", headers=auth_headers)
        assert response.json()["tokens_used"] == 0
        assert response.json()["tier"] is None
