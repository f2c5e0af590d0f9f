"""Configuration management using Pydantic settings."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, PostgresDsn, computed_field
from functools import lru_cache
import os


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # API Settings
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "AnthonChat"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Security
    SECRET_KEY: str = Field(default="dev-secret-key-change-in-production")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    SESSION_COOKIE_NAME: str = "access_token"

    # Shared secret the messaging bots send in the x-bot-secret header
    BOT_SECRET_TOKEN: Optional[str] = Field(default=None)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    FRONTEND_URL: str = Field(default="http://localhost:3000")

    # Database
    POSTGRES_SERVER: str = Field(default="localhost")
    POSTGRES_USER: str = Field(default="anthonchat")
    POSTGRES_PASSWORD: str = Field(default="local_dev_password")
    POSTGRES_DB: str = Field(default="anthonchat")
    POSTGRES_PORT: int = Field(default=5432)
    MAX_CONNECTIONS_COUNT: int = Field(default=10)

    @computed_field
    @property
    def DATABASE_URL(self) -> PostgresDsn | str:
        """Construct database URL from components."""
        # SQLALCHEMY_DATABASE_URI wins (Unix sockets, sqlite for local runs)
        sqlalchemy_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        if sqlalchemy_uri:
            return sqlalchemy_uri

        return PostgresDsn.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Stripe Payment Processing
    STRIPE_SECRET_KEY: str = Field(default="sk_test_dummy")
    STRIPE_WEBHOOK_SECRET: str = Field(default="whsec_dummy")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = Field(default=300)

    # Signup billing: bounded wait for the customer to show up locally
    STRIPE_SYNC_TIMEOUT_SECONDS: float = Field(default=20.0)
    STRIPE_SYNC_INTERVAL_SECONDS: float = Field(default=0.1)

    # Trials
    DEFAULT_TRIAL_PRICE_ID: Optional[str] = Field(default=None)
    DEFAULT_TRIAL_DAYS: int = Field(default=14)
    TRIAL_ENABLED: bool = Field(default=True)
    TRIAL_CHECK_PRODUCT_METADATA: bool = Field(default=True)
    TRIAL_CHECK_PRICE_METADATA: bool = Field(default=True)
    TRIAL_FALLBACK_TO_LOWEST_PRICE: bool = Field(default=False)

    # Channel linking
    LINK_NONCE_TTL_SECONDS: int = Field(default=300)
    REGISTRATION_NONCE_TTL_SECONDS: int = Field(default=600)
    LINK_POLL_INTERVAL_SECONDS: float = Field(default=3.0)
    TELEGRAM_BOT_USERNAME: Optional[str] = Field(default=None)
    WHATSAPP_BOT_PHONE: Optional[str] = Field(default=None)

    # Redirects
    SUPPORTED_LOCALES: list[str] = Field(default=["en", "it"])
    DEFAULT_LOCALE: str = Field(default="en")

    def bot_handle_for(self, channel_id: str) -> Optional[str]:
        """Bot username or phone used to build deep links for a channel."""
        return {
            "telegram": self.TELEGRAM_BOT_USERNAME,
            "whatsapp": self.WHATSAPP_BOT_PHONE,
        }.get(channel_id)


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()


@lru_cache()
def get_cached_settings() -> Settings:
    """Get cached settings for performance."""
    return Settings()


settings = get_cached_settings()
