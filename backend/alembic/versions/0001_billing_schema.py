"""Billing schema: plan catalog, subscription ledger, usage and audit

Revision ID: 0001_billing_schema
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_billing_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


LIVE_STATUS_PREDICATE = "status IN ('active', 'trialing')"


def upgrade() -> None:
    """Create the billing tables."""

    # Plan catalog
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(50), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('stripe_price_id', sa.String(255), nullable=True),
        sa.Column('stripe_product_id', sa.String(255), nullable=True),
        sa.Column('daily_interactions_limit', sa.Integer, nullable=True),
        sa.Column('price_cents', sa.Integer, nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='brl'),
        sa.Column('interval', sa.String(10), nullable=False, server_default='month'),
        sa.Column('features', postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('active', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            'daily_interactions_limit IS NULL OR daily_interactions_limit >= 0',
            name='ck_subscription_plans_limit_non_negative',
        ),
    )
    op.create_index(
        'ix_subscription_plans_stripe_price_id',
        'subscription_plans',
        ['stripe_price_id'],
        unique=True,
    )

    op.create_table(
        'subscription_plan_prices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('plan_id', sa.String(50), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('stripe_price_id', sa.String(255), nullable=False, unique=True),
        sa.Column('amount_cents', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='brl'),
        sa.Column('billing_interval', sa.String(10), nullable=False, server_default='month'),
        sa.Column('is_current', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_subscription_plan_prices_plan_id', 'subscription_plan_prices', ['plan_id'])
    op.create_index(
        'uq_subscription_plan_prices_current',
        'subscription_plan_prices',
        ['plan_id'],
        unique=True,
        postgresql_where=sa.text('is_current'),
    )

    # Subscription ledger
    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('plan_id', sa.String(50), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('trial_start', sa.DateTime(timezone=True)),
        sa.Column('trial_end', sa.DateTime(timezone=True)),
        sa.Column('canceled_at', sa.DateTime(timezone=True)),
        sa.Column('cancel_at', sa.DateTime(timezone=True)),
        sa.Column('cancel_at_period_end', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index('ix_user_subscriptions_stripe_customer_id', 'user_subscriptions', ['stripe_customer_id'])
    op.create_index(
        'ix_user_subscriptions_stripe_subscription_id',
        'user_subscriptions',
        ['stripe_subscription_id'],
        unique=True,
    )
    op.create_index('ix_user_subscriptions_status', 'user_subscriptions', ['status'])
    # At most one live subscription per user
    op.create_index(
        'uq_user_subscriptions_live_user',
        'user_subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_PREDICATE),
    )

    op.create_table(
        'daily_interaction_usage',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('usage_date', sa.Date, nullable=False),
        sa.Column('interactions_used', sa.Integer, nullable=False, server_default='0'),
        sa.Column('daily_limit', sa.Integer, nullable=True),
        sa.Column('subscription_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'usage_date', name='uq_daily_interaction_usage_user_date'),
        sa.CheckConstraint('interactions_used >= 0', name='ck_daily_interaction_usage_non_negative'),
        sa.CheckConstraint(
            'daily_limit IS NULL OR interactions_used <= daily_limit',
            name='ck_daily_interaction_usage_within_limit',
        ),
    )
    op.create_index('ix_daily_interaction_usage_user_id', 'daily_interaction_usage', ['user_id'])

    # Audit and idempotency
    op.create_table(
        'subscription_reconciliation_audit',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('action', sa.String(16), nullable=False),
        sa.Column('source', sa.String(16), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255)),
        sa.Column('stripe_customer_id', sa.String(255)),
        sa.Column('user_id', sa.String(36)),
        sa.Column('plan_id', sa.String(50)),
        sa.Column('status_stripe', sa.String(32)),
        sa.Column('status_db', sa.String(32)),
        sa.Column('period_end_stripe', sa.DateTime(timezone=True)),
        sa.Column('period_end_db', sa.DateTime(timezone=True)),
        sa.Column('event_id', sa.String(255)),
        sa.Column('reason', sa.String(100)),
        sa.Column('error', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'ix_subscription_reconciliation_audit_stripe_subscription_id',
        'subscription_reconciliation_audit',
        ['stripe_subscription_id'],
    )
    op.create_index(
        'ix_subscription_reconciliation_audit_created_at',
        'subscription_reconciliation_audit',
        ['created_at'],
    )

    op.create_table(
        'stripe_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('provider_created_at', sa.DateTime(timezone=True)),
        sa.Column('outcome', sa.String(16), nullable=False, server_default='applied'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_stripe_webhook_events_processed_at', 'stripe_webhook_events', ['processed_at'])

    # Email -> auth user lookup used by the webhook handler (service role only)
    op.execute("""
        CREATE OR REPLACE FUNCTION public.get_user_id_by_email(user_email text)
        RETURNS uuid
        LANGUAGE sql
        SECURITY DEFINER
        SET search_path = auth, public
        AS $$
            SELECT id FROM auth.users WHERE lower(email) = lower(user_email) LIMIT 1
        $$
    """)
    op.execute("REVOKE ALL ON FUNCTION public.get_user_id_by_email(text) FROM PUBLIC")
    op.execute("GRANT EXECUTE ON FUNCTION public.get_user_id_by_email(text) TO service_role")

    # Billing tables are written by the backend only
    for table in (
        'subscription_plans',
        'subscription_plan_prices',
        'user_subscriptions',
        'daily_interaction_usage',
        'subscription_reconciliation_audit',
        'stripe_webhook_events',
    ):
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')
        op.execute(f"""
            CREATE POLICY "Service role manages {table}"
            ON {table} FOR ALL
            TO service_role
            USING (true)
            WITH CHECK (true)
        """)


def downgrade() -> None:
    """Drop the billing tables."""
    op.execute("DROP FUNCTION IF EXISTS public.get_user_id_by_email(text)")

    op.drop_table('stripe_webhook_events')
    op.drop_table('subscription_reconciliation_audit')
    op.drop_table('daily_interaction_usage')
    op.drop_table('user_subscriptions')
    op.drop_table('subscription_plan_prices')
    op.drop_table('subscription_plans')
