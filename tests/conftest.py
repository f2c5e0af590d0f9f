"""Pytest configuration for tests."""

import os
import uuid
from typing import AsyncGenerator
from unittest.mock import MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"

from core.app import create_app  # noqa: E402
from core.audit import AuditTrail  # noqa: E402
from core.config import Settings, get_settings  # noqa: E402
from core.database import get_db  # noqa: E402
from core.security import create_access_token  # noqa: E402
from models.base import Base  # noqa: E402
from models.channel_link import Channel  # noqa: E402
from models.subscription import Tier  # noqa: E402
from services.identity import IdentityProvider  # noqa: E402
from services.stripe_service import StripeService  # noqa: E402

from factories import BASIC_PRICE_ID, CUSTOMER_ID, TEST_PASSWORD  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="test",
        SECRET_KEY="test-secret-key",
        BOT_SECRET_TOKEN="bot-secret",
        TELEGRAM_BOT_USERNAME="@anthon_bot",
        WHATSAPP_BOT_PHONE="+1 555 000 1111",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_SYNC_TIMEOUT_SECONDS=0.05,
        STRIPE_SYNC_INTERVAL_SECONDS=0.01,
        FRONTEND_URL="https://app.example.com",
        DEFAULT_TRIAL_PRICE_ID=None,
    )


@pytest.fixture
async def engine():
    """In-memory database shared by every session in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Session with the reference data every flow needs."""
    async with session_maker() as session:
        session.add_all([
            Channel(id="telegram", name="Telegram"),
            Channel(id="whatsapp", name="WhatsApp"),
            Tier(
                id=str(uuid.uuid4()),
                slug="basic",
                name="Basic",
                stripe_price_id=BASIC_PRICE_ID,
                max_tokens=100000,
                max_requests=1000,
            ),
        ])
        await session.commit()
        yield session


@pytest.fixture
def audit() -> AuditTrail:
    return AuditTrail()


@pytest.fixture
async def user(db_session):
    return await IdentityProvider(db_session).sign_up(
        "alice@example.com", TEST_PASSWORD, first_name="Alice"
    )


@pytest.fixture
async def other_user(db_session):
    return await IdentityProvider(db_session).sign_up("bob@example.com", TEST_PASSWORD)


@pytest.fixture
def stripe_mock():
    """Stand-in for the stripe module as returned by StripeService._get_stripe."""
    client = MagicMock()
    client.Customer.create.return_value = {"id": CUSTOMER_ID, "email": "new@example.com"}
    client.Customer.retrieve.return_value = {"id": CUSTOMER_ID, "email": "new@example.com"}
    with patch.object(StripeService, "_get_stripe", return_value=client):
        yield client


@pytest.fixture
async def client(session_maker, settings, stripe_mock, db_session) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(settings)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(user, settings):
    token = create_access_token({"sub": user.id}, settings=settings)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def bot_headers(settings):
    return {"x-bot-secret": settings.BOT_SECRET_TOKEN}
