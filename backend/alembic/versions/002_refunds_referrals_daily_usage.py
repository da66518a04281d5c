"""Refund tracking, referral rewards and per-image usage.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Images per generation debit, for the daily limit
    op.add_column('token_transactions', sa.Column('image_count', sa.Integer(), nullable=True))

    # Refunded share of a charge
    op.add_column(
        'payment_transactions',
        sa.Column('refunded_amount', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_check_constraint(
        'ck_payment_refunded_non_negative', 'payment_transactions', 'refunded_amount >= 0'
    )
    op.create_index('ix_payment_transaction_payment_key', 'payment_transactions', ['payment_key'])

    # Create referral_rewards table
    op.create_table(
        'referral_rewards',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('referrer_id', sa.Uuid(), nullable=False),
        sa.Column('referred_id', sa.Uuid(), nullable=False),
        sa.Column('referrer_tokens', sa.Integer(), nullable=False),
        sa.Column('referred_tokens', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referred_id'),
        sa.CheckConstraint('referrer_id <> referred_id', name='ck_referral_not_self'),
    )
    op.create_index('ix_referral_rewards_referrer_id', 'referral_rewards', ['referrer_id'])


def downgrade() -> None:
    op.drop_index('ix_referral_rewards_referrer_id', table_name='referral_rewards')
    op.drop_table('referral_rewards')

    op.drop_index('ix_payment_transaction_payment_key', table_name='payment_transactions')
    op.drop_constraint('ck_payment_refunded_non_negative', 'payment_transactions', type_='check')
    op.drop_column('payment_transactions', 'refunded_amount')

    op.drop_column('token_transactions', 'image_count')
