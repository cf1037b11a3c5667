"""credit ledger: customers, subscriptions, ledger, usage, top-up failures, event log

Revision ID: 0001_credit_ledger
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_credit_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'billing_customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=False),
        sa.Column('billing_email', sa.String(length=255), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index('ix_billing_customers_user_id', 'billing_customers', ['user_id'], unique=True)
    op.create_index('ix_billing_customers_stripe_customer_id', 'billing_customers', ['stripe_customer_id'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_subscription_id', sa.String(length=64), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default=sa.text("'incomplete'")),
        sa.Column('price_id', sa.String(length=64), nullable=True),
        sa.Column('metadata_json', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('current_period_start', postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('current_period_end', postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('canceled_at', postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'], unique=True)
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_price_id', 'subscriptions', ['price_id'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])

    op.create_table(
        'subscription_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('stripe_item_id', sa.String(length=64), nullable=True),
        sa.Column('price_id', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete="CASCADE"),
    )
    op.create_index('ix_subscription_items_subscription_id', 'subscription_items', ['subscription_id'])

    op.create_table(
        'credit_balances',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column('updated_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint('user_id', 'key', name='uq_credit_balances_user_key'),
    )
    op.create_index('ix_credit_balances_user_id', 'credit_balances', ['user_id'])

    op.create_table(
        'credit_ledger',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('transaction_type', sa.String(length=16), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('source_id', sa.String(length=255), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_ledger_idempotency_key'),
        sa.CheckConstraint(
            "transaction_type IN ('grant','debit','refund','topup','overage','reclaim')",
            name='ck_credit_ledger_transaction_type',
        ),
    )
    op.create_index('ix_credit_ledger_user_id', 'credit_ledger', ['user_id'])
    op.create_index('ix_credit_ledger_key', 'credit_ledger', ['key'])
    op.create_index('ix_credit_ledger_source_id', 'credit_ledger', ['source_id'])
    op.create_index('ix_credit_ledger_created_at', 'credit_ledger', ['created_at'])

    op.create_table(
        'usage_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('occurred_at', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('period_start', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('period_end', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('meter_event_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint('meter_event_id', name='uq_usage_events_meter_event_id'),
    )
    op.create_index('ix_usage_events_user_key_occurred', 'usage_events', ['user_id', 'key', 'occurred_at'])

    op.create_table(
        'topup_failures',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('payment_method_id', sa.String(length=64), nullable=False, server_default=sa.text("''")),
        sa.Column('decline_type', sa.String(length=8), nullable=False),
        sa.Column('decline_code', sa.String(length=64), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('last_failure_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column('disabled', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.UniqueConstraint('user_id', 'key', 'payment_method_id', name='uq_topup_failures_user_key_pm'),
    )
    op.create_index('ix_topup_failures_user_id', 'topup_failures', ['user_id'])

    op.create_table(
        'billing_event_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('signature_valid', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('retries', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index('ix_billing_event_logs_stripe_event_id', 'billing_event_logs', ['stripe_event_id'], unique=True)
    op.create_index('ix_billing_event_logs_type', 'billing_event_logs', ['type'])


def downgrade():
    op.drop_index('ix_billing_event_logs_type', table_name='billing_event_logs')
    op.drop_index('ix_billing_event_logs_stripe_event_id', table_name='billing_event_logs')
    op.drop_table('billing_event_logs')
    op.drop_index('ix_topup_failures_user_id', table_name='topup_failures')
    op.drop_table('topup_failures')
    op.drop_index('ix_usage_events_user_key_occurred', table_name='usage_events')
    op.drop_table('usage_events')
    op.drop_index('ix_credit_ledger_created_at', table_name='credit_ledger')
    op.drop_index('ix_credit_ledger_source_id', table_name='credit_ledger')
    op.drop_index('ix_credit_ledger_key', table_name='credit_ledger')
    op.drop_index('ix_credit_ledger_user_id', table_name='credit_ledger')
    op.drop_table('credit_ledger')
    op.drop_index('ix_credit_balances_user_id', table_name='credit_balances')
    op.drop_table('credit_balances')
    op.drop_index('ix_subscription_items_subscription_id', table_name='subscription_items')
    op.drop_table('subscription_items')
    op.drop_index('ix_subscriptions_current_period_end', table_name='subscriptions')
    op.drop_index('ix_subscriptions_price_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_stripe_subscription_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_billing_customers_stripe_customer_id', table_name='billing_customers')
    op.drop_index('ix_billing_customers_user_id', table_name='billing_customers')
    op.drop_table('billing_customers')
