"""initial_schema

Revision ID: 4c1e2a7b9d01
Revises:
Create Date: 2026-10-19

Users, channels and their links, link nonces, the Stripe mirror and usage
counters. Seeds the two supported channels.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e2a7b9d01'
down_revision = None
branch_labels = None
depends_on = None

link_method = sa.Enum('DEEP_LINK', 'COMMAND', name='linkmethod')
nonce_status = sa.Enum('PENDING', 'DONE', 'EXPIRED', name='noncestatus')
subscription_status = sa.Enum(
    'TRIALING', 'ACTIVE', 'PAST_DUE', 'CANCELED', 'UNPAID',
    'INCOMPLETE', 'INCOMPLETE_EXPIRED', 'PAUSED',
    name='subscriptionstatus',
)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('nickname', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('onboarding_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True, unique=True),
        sa.Column('signup_source', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    channels = op.create_table(
        'channels',
        sa.Column('id', sa.String(50), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('icon_url', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('mandatory', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('link_method', link_method, nullable=False, server_default='DEEP_LINK'),
    )

    op.create_table(
        'user_channels',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('channel_id', sa.String(50), sa.ForeignKey('channels.id'), nullable=False),
        sa.Column('link', sa.String(255), nullable=False),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'channel_id', name='uq_user_channel'),
        sa.UniqueConstraint('channel_id', 'link', name='uq_channel_link'),
    )
    op.create_index('ix_user_channels_user_id', 'user_channels', ['user_id'])

    op.create_table(
        'link_nonces',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('nonce', sa.String(36), nullable=False),
        sa.Column('channel_id', sa.String(50), sa.ForeignKey('channels.id'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('status', nonce_status, nullable=False, server_default='PENDING'),
        sa.Column('link', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_link_nonces_nonce', 'link_nonces', ['nonce'], unique=True)
    op.create_index('idx_link_nonces_expires', 'link_nonces', ['expires_at'])
    op.create_index('idx_link_nonces_channel_link', 'link_nonces', ['channel_id', 'link'])

    op.create_table(
        'stripe_customers',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_stripe_customers_email', 'stripe_customers', ['email'])

    op.create_table(
        'tiers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('slug', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('stripe_price_id', sa.String(255), nullable=True, unique=True),
        sa.Column('max_tokens', sa.Integer(), nullable=True),
        sa.Column('max_requests', sa.Integer(), nullable=True),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('tier_id', sa.String(36), sa.ForeignKey('tiers.id'), nullable=True),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True, unique=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('idx_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'usage_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_channel_id', sa.String(36), sa.ForeignKey('user_channels.id'), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('requests_used', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('user_channel_id', 'period_start', name='uq_usage_channel_period'),
    )
    op.create_index('ix_usage_records_user_channel_id', 'usage_records', ['user_channel_id'])

    op.bulk_insert(channels, [
        {'id': 'telegram', 'name': 'Telegram', 'is_active': True, 'mandatory': False, 'link_method': 'DEEP_LINK'},
        {'id': 'whatsapp', 'name': 'WhatsApp', 'is_active': True, 'mandatory': False, 'link_method': 'DEEP_LINK'},
    ])


def downgrade() -> None:
    op.drop_table('usage_records')
    op.drop_table('subscriptions')
    op.drop_table('tiers')
    op.drop_table('stripe_customers')
    op.drop_table('link_nonces')
    op.drop_table('user_channels')
    op.drop_table('channels')
    op.drop_table('users')

    bind = op.get_bind()
    subscription_status.drop(bind, checkfirst=True)
    nonce_status.drop(bind, checkfirst=True)
    link_method.drop(bind, checkfirst=True)
