"""create billing tables

Revision ID: c4e1a7d92b10
Revises:
Create Date: 2025-07-02 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c4e1a7d92b10'
down_revision = None
branch_labels = None
depends_on = None

CURRENT_STATUS = sa.text("status IN ('active', 'trialing')")


def upgrade():
    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('plan_id', sa.String(length=20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='incomplete'),
        sa.Column('billing_period', sa.String(length=10), nullable=False, server_default='monthly'),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=64), nullable=True, unique=True),
        sa.Column('stripe_price_id', sa.String(length=64), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('billing_anchor_day', sa.Integer(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index('ix_user_subscriptions_status', 'user_subscriptions', ['status'])
    op.create_index('ix_user_subscriptions_stripe_customer_id', 'user_subscriptions', ['stripe_customer_id'])
    # At most one active or trialing subscription per user
    op.create_index(
        'uq_user_subscriptions_current_user',
        'user_subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=CURRENT_STATUS,
        sqlite_where=CURRENT_STATUS,
    )

    op.create_table(
        'usage_tracking',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('metric_type', sa.String(length=32), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'metric_type', 'period_start', name='uq_usage_tracking_user_metric_period'),
    )
    op.create_index('ix_usage_tracking_user_id', 'usage_tracking', ['user_id'])

    op.create_table(
        'monthly_usage_tracking',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('month_year', sa.String(length=7), nullable=False),
        sa.Column('plan_tier', sa.String(length=20), nullable=True),
        sa.Column('prompts_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overage_prompts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overage_charges_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('prepaid_charges_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('billed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('billed_at', sa.DateTime(), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'month_year', name='uq_monthly_usage_user_month'),
    )
    op.create_index('ix_monthly_usage_tracking_user_id', 'monthly_usage_tracking', ['user_id'])
    op.create_index('ix_monthly_usage_tracking_billed', 'monthly_usage_tracking', ['billed'])

    op.create_table(
        'billing_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('user_subscriptions.id'), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(length=64), nullable=True, unique=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=64), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('invoice_url', sa.String(length=512), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_billing_history_user_id', 'billing_history', ['user_id'])
    op.create_index('ix_billing_history_status', 'billing_history', ['status'])
    op.create_index('ix_billing_history_created_at', 'billing_history', ['created_at'])

    op.create_table(
        'overage_payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('month_year', sa.String(length=7), nullable=False),
        sa.Column('prompt_count', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(length=64), nullable=False, unique=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_overage_payments_user_id', 'overage_payments', ['user_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('stripe_event_id', sa.String(length=64), nullable=False, unique=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'prompts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_prompts_user_id', 'prompts', ['user_id'])


def downgrade():
    op.drop_index('ix_prompts_user_id', table_name='prompts')
    op.drop_table('prompts')
    op.drop_table('webhook_events')
    op.drop_index('ix_overage_payments_user_id', table_name='overage_payments')
    op.drop_table('overage_payments')
    op.drop_index('ix_billing_history_created_at', table_name='billing_history')
    op.drop_index('ix_billing_history_status', table_name='billing_history')
    op.drop_index('ix_billing_history_user_id', table_name='billing_history')
    op.drop_table('billing_history')
    op.drop_index('ix_monthly_usage_tracking_billed', table_name='monthly_usage_tracking')
    op.drop_index('ix_monthly_usage_tracking_user_id', table_name='monthly_usage_tracking')
    op.drop_table('monthly_usage_tracking')
    op.drop_index('ix_usage_tracking_user_id', table_name='usage_tracking')
    op.drop_table('usage_tracking')
    op.drop_index('uq_user_subscriptions_current_user', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_stripe_customer_id', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_status', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_user_id', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
