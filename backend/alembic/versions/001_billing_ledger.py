"""Create billing ledger tables.

Revision ID: 001
Revises:
Create Date: 2024-12-01
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    op.create_table(
        'billing_plans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('billing_interval', sa.String(20), nullable=False),
        sa.Column('interval_days', sa.Integer(), nullable=False),
        sa.Column('limits', sa.JSON(), nullable=True),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_billing_plans_code', 'billing_plans', ['code'], unique=True)

    op.create_table(
        'billing_subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('plan_code', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_billing_subscriptions_tenant_id', 'billing_subscriptions', ['tenant_id'], unique=True)
    op.create_index('ix_billing_subscriptions_plan_code', 'billing_subscriptions', ['plan_code'])
    op.create_index('ix_billing_subscriptions_status', 'billing_subscriptions', ['status'])

    op.create_table(
        'billing_invoices',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('invoice_number', sa.String(64), nullable=False),
        sa.Column('gateway', sa.String(50), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('gateway_session_token', sa.String(255), nullable=True),
        sa.Column('gateway_redirect_url', sa.String(1024), nullable=True),
        sa.Column('target_plan_code', sa.String(50), nullable=True),
        sa.Column('gateway_payload', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['billing_subscriptions.id']),
        sa.UniqueConstraint('invoice_number'),
        sa.UniqueConstraint('gateway', 'external_id', name='uq_billing_invoices_gateway_external_id'),
    )
    op.create_index('ix_billing_invoices_tenant_id', 'billing_invoices', ['tenant_id'])
    op.create_index('ix_billing_invoices_status', 'billing_invoices', ['status'])
    op.create_index(
        'ix_billing_invoices_tenant_type_status', 'billing_invoices', ['tenant_id', 'type', 'status']
    )

    op.create_table(
        'billing_wallet_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('reason', sa.String(30), nullable=False),
        sa.Column('reference_type', sa.String(30), nullable=False),
        sa.Column('reference_id', sa.String(64), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['invoice_id'], ['billing_invoices.id']),
        sa.UniqueConstraint(
            'tenant_id', 'reason', 'reference_id',
            name='uq_billing_wallet_transactions_tenant_reason_reference',
        ),
    )
    op.create_index('ix_billing_wallet_transactions_tenant_id', 'billing_wallet_transactions', ['tenant_id'])
    op.create_index('ix_billing_wallet_transactions_created_at', 'billing_wallet_transactions', ['created_at'])

    op.create_table(
        'billing_webhook_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('gateway', sa.String(50), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('raw_payload', sa.Text(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('source_ip', sa.String(64), nullable=True),
        sa.Column('signature_valid', sa.Boolean(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_billing_webhook_events_gateway', 'billing_webhook_events', ['gateway'])
    op.create_index('ix_billing_webhook_events_external_id', 'billing_webhook_events', ['external_id'])
    op.create_index('ix_billing_webhook_events_status', 'billing_webhook_events', ['status'])

    op.create_table(
        'billing_plan_changes',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('from_plan_code', sa.String(50), nullable=False),
        sa.Column('to_plan_code', sa.String(50), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('elapsed_fraction', sa.Float(), nullable=False),
        sa.Column('amount_due', MONEY, nullable=False),
        sa.Column('credit_amount', MONEY, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=True),
        sa.Column('wallet_transaction_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['billing_subscriptions.id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['billing_invoices.id']),
    )
    op.create_index('ix_billing_plan_changes_tenant_id', 'billing_plan_changes', ['tenant_id'])
    op.create_index('ix_billing_plan_changes_status', 'billing_plan_changes', ['status'])
    op.create_index('ix_billing_plan_changes_invoice_id', 'billing_plan_changes', ['invoice_id'])
    op.create_index(
        'ix_billing_plan_changes_tenant_status_completed',
        'billing_plan_changes',
        ['tenant_id', 'status', 'completed_at'],
    )


def downgrade() -> None:
    op.drop_table('billing_plan_changes')
    op.drop_table('billing_webhook_events')
    op.drop_table('billing_wallet_transactions')
    op.drop_table('billing_invoices')
    op.drop_table('billing_subscriptions')
    op.drop_table('billing_plans')
