"""Billing tables migration.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('plan', sa.String(50), nullable=False, server_default='FREE'),
        sa.Column('status', sa.String(50), nullable=False, server_default='ACTIVE'),
        sa.Column('customer_key', sa.String(255), nullable=False),
        sa.Column('billing_key', sa.String(255), nullable=True),
        sa.Column('card_brand', sa.String(50), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('tokens_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_characters', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_projects', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_key'),
        sa.CheckConstraint('current_period_end > current_period_start', name='ck_subscription_period'),
        sa.CheckConstraint('tokens_used >= 0', name='ck_subscription_tokens_used_non_negative'),
        sa.CheckConstraint(
            'tokens_total = -1 OR tokens_used <= tokens_total',
            name='ck_subscription_tokens_within_total',
        ),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
    op.create_index('ix_subscriptions_plan', 'subscriptions', ['plan'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])
    op.create_index('ix_subscription_status_period_end', 'subscriptions', ['status', 'current_period_end'])

    # Create token_transactions table
    op.create_table(
        'token_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_token_transactions_user_id', 'token_transactions', ['user_id'])
    op.create_index('ix_token_transactions_subscription_id', 'token_transactions', ['subscription_id'])
    op.create_index('ix_token_transactions_reason', 'token_transactions', ['reason'])
    op.create_index('ix_token_transaction_user_created', 'token_transactions', ['user_id', 'created_at'])

    # Create payment_transactions table
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('order_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tokens', sa.Integer(), nullable=True),
        sa.Column('payment_key', sa.String(255), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index('ix_payment_transactions_user_id', 'payment_transactions', ['user_id'])
    op.create_index('ix_payment_transactions_subscription_id', 'payment_transactions', ['subscription_id'])
    op.create_index('ix_payment_transactions_kind', 'payment_transactions', ['kind'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('ix_payment_transaction_user_created', 'payment_transactions', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('payment_transactions')
    op.drop_table('token_transactions')
    op.drop_table('subscriptions')
