from logging.config import fileConfig

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context
import sys
from pathlib import Path

# Add src directory to Python path (this is how the app runs)
src_dir = str(Path(__file__).parent.parent / "src")
sys.path.insert(0, src_dir)

from core.config import get_settings

from models.base import Base

# Register every model with Base.metadata for autogenerate
from models.user import User  # noqa: F401
from models.channel_link import Channel, UserChannel, LinkNonce  # noqa: F401
from models.subscription import StripeCustomer, Tier, Subscription  # noqa: F401
from models.usage import UsageRecord  # noqa: F401

config = context.config

# Alembic runs synchronously; swap the async driver for the sync one
settings = get_settings()
sync_url = str(settings.DATABASE_URL).replace("postgresql+asyncpg://", "postgresql://")
config.set_main_option("sqlalchemy.url", sync_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a database connection."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
