"""Create payment ledger tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Tables may already exist when created by Base.metadata.create_all
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=True),
            sa.Column('dispute_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('blocked_reason', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'profiles' not in existing_tables:
        op.create_table(
            'profiles',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('user_id', sa.String(length=36), nullable=False),
            sa.Column('display_name', sa.String(length=255), nullable=True),
            sa.Column('purpose', sa.String(length=50), nullable=True),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
            sa.Column('country_code', sa.String(length=2), nullable=True),
            sa.Column('payout_status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('platform_debit_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('stripe_account_id', sa.String(length=255), nullable=True),
            sa.Column('platform_customer_id', sa.String(length=255), nullable=True),
            sa.Column('paystack_bank_code', sa.String(length=50), nullable=True),
            sa.Column('paystack_account_number', sa.String(length=512), nullable=True),
            sa.Column('paystack_account_name', sa.String(length=255), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        )
        op.create_index('ix_profiles_user_id', 'profiles', ['user_id'], unique=True)
        op.create_index('ix_profiles_stripe_account_id', 'profiles', ['stripe_account_id'], unique=True)

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('creator_id', sa.String(length=36), nullable=False),
            sa.Column('subscriber_id', sa.String(length=36), nullable=False),
            sa.Column('tier_id', sa.String(length=255), nullable=True),
            sa.Column('tier_name', sa.String(length=255), nullable=True),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('interval', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('purpose', sa.String(length=50), nullable=True),
            sa.Column('fee_model', sa.String(length=50), nullable=True),
            sa.Column('fee_mode', sa.String(length=30), nullable=True),
            sa.Column('ltv_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_checkout_session_id', sa.String(length=255), nullable=True),
            sa.Column('paystack_authorization_code', sa.String(length=512), nullable=True),
            sa.Column('paystack_customer_code', sa.String(length=255), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('status_event_at', sa.BigInteger(), nullable=True),
            sa.Column('async_view_id', sa.String(length=255), nullable=True),
            sa.Column('async_request_id', sa.String(length=255), nullable=True),
            sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['creator_id'], ['users.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['subscriber_id'], ['users.id'], ondelete='CASCADE'),
            sa.UniqueConstraint('subscriber_id', 'creator_id', 'interval',
                                name='uq_subscriptions_subscriber_creator_interval'),
        )
        op.create_index('ix_subscriptions_creator_id', 'subscriptions', ['creator_id'])
        op.create_index('ix_subscriptions_subscriber_id', 'subscriptions', ['subscriber_id'])
        op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions',
                        ['stripe_subscription_id'], unique=True)
        op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    if 'payments' not in existing_tables:
        op.create_table(
            'payments',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('subscription_id', sa.String(length=36), nullable=True),
            sa.Column('creator_id', sa.String(length=36), nullable=False),
            sa.Column('subscriber_id', sa.String(length=36), nullable=True),
            sa.Column('type', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('gross_cents', sa.Integer(), nullable=True),
            sa.Column('fee_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('net_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('subscriber_fee_cents', sa.Integer(), nullable=True),
            sa.Column('creator_fee_cents', sa.Integer(), nullable=True),
            sa.Column('ltv_adjustment_cents', sa.Integer(), nullable=True),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('fee_model', sa.String(length=50), nullable=True),
            sa.Column('fee_effective_rate', sa.Float(), nullable=True),
            sa.Column('fee_was_capped', sa.Boolean(), nullable=True),
            sa.Column('failure_reason', sa.String(length=500), nullable=True),
            sa.Column('stripe_event_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_charge_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_dispute_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_payout_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_invoice_id', sa.String(length=255), nullable=True),
            sa.Column('paystack_event_id', sa.String(length=255), nullable=True),
            sa.Column('paystack_transaction_ref', sa.String(length=255), nullable=True),
            sa.Column('paystack_transfer_code', sa.String(length=255), nullable=True),
            sa.Column('paystack_dispute_id', sa.String(length=255), nullable=True),
            sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
            sa.ForeignKeyConstraint(['creator_id'], ['users.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['subscriber_id'], ['users.id'], ondelete='SET NULL'),
            sa.UniqueConstraint('stripe_dispute_id', name='uq_payments_stripe_dispute_id'),
            sa.UniqueConstraint('stripe_payout_id', name='uq_payments_stripe_payout_id'),
            sa.UniqueConstraint('stripe_invoice_id', name='uq_payments_stripe_invoice_id'),
            sa.UniqueConstraint('paystack_dispute_id', name='uq_payments_paystack_dispute_id'),
        )
        op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
        op.create_index('ix_payments_creator_id', 'payments', ['creator_id'])
        op.create_index('ix_payments_subscriber_id', 'payments', ['subscriber_id'])
        op.create_index('ix_payments_stripe_event_id', 'payments', ['stripe_event_id'], unique=True)
        op.create_index('ix_payments_stripe_charge_id', 'payments', ['stripe_charge_id'])
        op.create_index('ix_payments_stripe_payment_intent_id', 'payments', ['stripe_payment_intent_id'])
        op.create_index('ix_payments_paystack_event_id', 'payments', ['paystack_event_id'], unique=True)
        op.create_index('ix_payments_paystack_transaction_ref', 'payments', ['paystack_transaction_ref'])

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('provider', sa.String(length=20), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('error', sa.Text(), nullable=True),
            sa.Column('processing_time_ms', sa.Integer(), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=True)
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])

    if 'activities' not in existing_tables:
        op.create_table(
            'activities',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('user_id', sa.String(length=36), nullable=False),
            sa.Column('type', sa.String(length=100), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        )
        op.create_index('ix_activities_user_id', 'activities', ['user_id'])
        op.create_index('ix_activities_type', 'activities', ['type'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    for table in ('activities', 'webhook_events', 'payments', 'subscriptions', 'profiles', 'users'):
        if table in existing_tables:
            op.drop_table(table)
