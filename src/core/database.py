"""Database configuration with async SQLAlchemy."""

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
import logging

from .config import get_settings

logger = logging.getLogger(__name__)


# Create engine and session maker lazily
_engine = None
_async_session_maker = None


def get_engine():
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = str(settings.DATABASE_URL)
        if url.startswith("sqlite"):
            _engine = create_async_engine(url, echo=False, future=True)
        else:
            _engine = create_async_engine(
                url,
                echo=False,
                future=True,
                pool_size=settings.MAX_CONNECTIONS_COUNT,
                max_overflow=10,
                pool_pre_ping=True,
                pool_recycle=300,
                pool_timeout=10,
            )
    return _engine


def get_session_maker():
    """Get or create the async session maker."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get a database session.

    Each signup step commits on its own; this dependency never commits.
    """
    async with get_session_maker()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Initialize database - migrations must be run separately."""
    # Import all models here to ensure they're registered
    import models  # noqa
    from models.base import Base

    engine = get_engine()
    if engine.url.get_backend_name() == "sqlite":
        # Local runs without Postgres get the schema created directly
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialization - sqlite schema created")
        return

    logger.info("Database initialization - relying on migrations")
    logger.info("Run migrations with: alembic upgrade head")


async def close_db() -> None:
    """Close database connections."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
