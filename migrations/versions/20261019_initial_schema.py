"""Initial schema: users, broker credentials, webhooks and the coin ledger

Revision ID: 20261019_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa

revision = '20261019_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('email', sa.String(length=120), nullable=False),
        sa.Column('password_hash', sa.String(length=256)),
        sa.Column('name', sa.String(length=120)),
        sa.Column('phone', sa.String(length=20)),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='user'),
        sa.Column('coin_balance', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_user_email', 'user', ['email'], unique=True)

    op.create_table(
        'broker_credentials',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('user.id'), nullable=False),
        sa.Column('broker_name', sa.String(length=50), nullable=False),
        sa.Column('credentials', sa.JSON()),
        sa.Column('access_token', sa.Text()),
        sa.Column('token_expiry', sa.DateTime(timezone=True)),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_pending_auth', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auth_state', sa.String(length=64)),
        sa.Column('redirect_url', sa.String(length=255)),
        sa.Column('session_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_activity', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_broker_credentials_user_id', 'broker_credentials', ['user_id'])
    op.create_index('ix_broker_credentials_broker_name', 'broker_credentials', ['broker_name'])
    op.create_index('ix_broker_credentials_is_active', 'broker_credentials', ['is_active'])
    op.create_index('ix_broker_credentials_auth_state', 'broker_credentials', ['auth_state'])
    op.create_index('ix_broker_credentials_session_active', 'broker_credentials', ['session_active'])
    op.create_index('ix_broker_credentials_created_at', 'broker_credentials', ['created_at'])
    op.create_index(
        'idx_broker_user_active', 'broker_credentials', ['user_id', 'is_active', 'created_at']
    )
    op.create_index(
        'idx_broker_session_sync', 'broker_credentials', ['is_active', 'session_active']
    )

    op.create_table(
        'webhooks',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('user.id'), nullable=False),
        sa.Column('name', sa.String(length=120)),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('request_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_webhooks_user_id', 'webhooks', ['user_id'])
    op.create_index('ix_webhooks_token', 'webhooks', ['token'], unique=True)

    op.create_table(
        'webhook_logs',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column(
            'webhook_id',
            sa.Integer,
            sa.ForeignKey('webhooks.id', ondelete='SET NULL'),
        ),
        sa.Column('user_id', sa.Integer),
        sa.Column('payload', sa.JSON()),
        sa.Column('status', sa.String(length=20)),
        sa.Column('response', sa.JSON()),
        sa.Column('error_message', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_webhook_logs_webhook_id', 'webhook_logs', ['webhook_id'])
    op.create_index('ix_webhook_logs_user_id', 'webhook_logs', ['user_id'])
    op.create_index('ix_webhook_logs_status', 'webhook_logs', ['status'])
    op.create_index('ix_webhook_logs_created_at', 'webhook_logs', ['created_at'])

    op.create_table(
        'coin_orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('user.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('coins', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(length=8)),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('cf_order_id', sa.String(length=64)),
        sa.Column('payment_session_id', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_coin_orders_order_id', 'coin_orders', ['order_id'], unique=True)
    op.create_index('ix_coin_orders_user_id', 'coin_orders', ['user_id'])
    op.create_index('ix_coin_orders_status', 'coin_orders', ['status'])

    op.create_table(
        'coin_transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('user.id'), nullable=False),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('transaction_type', sa.String(length=20), nullable=False),
        sa.Column('description', sa.String(length=255)),
        sa.Column('reference', sa.String(length=64)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_coin_transactions_user_id', 'coin_transactions', ['user_id'])
    op.create_index('ix_coin_transactions_reference', 'coin_transactions', ['reference'])
    op.create_index('ix_coin_transactions_created_at', 'coin_transactions', ['created_at'])

    op.create_table(
        'service_usage',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('user.id'), nullable=False),
        sa.Column('service', sa.String(length=50), nullable=False),
        sa.Column('coins', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_service_usage_user_id', 'service_usage', ['user_id'])
    op.create_index('ix_service_usage_created_at', 'service_usage', ['created_at'])


def downgrade():
    op.drop_table('service_usage')
    op.drop_table('coin_transactions')
    op.drop_table('coin_orders')
    op.drop_table('webhook_logs')
    op.drop_table('webhooks')
    op.drop_table('broker_credentials')
    op.drop_table('user')
