"""Billing schema: subscriptions, prices, invoices, payments, refunds, coupons

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
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _money(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), **kwargs)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create the billing tables."""

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.BigInteger, nullable=False),
        sa.Column('tier', sa.String(20), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), server_default='PENDING', nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('region', sa.String(20), server_default='GLOBAL', nullable=False),

        # Billing period
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_end', sa.DateTime(timezone=True)),
        sa.Column('auto_renew', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        _money('credit_balance', server_default='0', nullable=False),

        # Scan leases
        sa.Column('expiry_processed', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('renewal_in_progress', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('last_renewal_attempt', sa.DateTime(timezone=True)),
        sa.Column('reminder_sent_at', sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_trial_end', 'subscriptions', ['trial_end'])
    op.create_index('ix_subscriptions_status_end_date', 'subscriptions', ['status', 'end_date'])
    op.create_index(
        'uq_subscriptions_user_open',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'ACTIVE')"),
        sqlite_where=sa.text("status IN ('PENDING', 'ACTIVE')"),
    )

    op.create_table(
        'subscription_prices',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('tier', sa.String(20), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('region', sa.String(20), server_default='GLOBAL', nullable=False),
        _money('price', nullable=False),
        _money('setup_fee', server_default='0', nullable=False),
        sa.Column('tax_rate', sa.Numeric(6, 4), server_default='0', nullable=False),
        sa.Column('discount_percentage', sa.Numeric(5, 2)),
        sa.Column('active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('valid_from', sa.DateTime(timezone=True)),
        sa.Column('valid_until', sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        'uq_subscription_prices_active_key',
        'subscription_prices',
        ['tier', 'billing_cycle', 'currency', 'region'],
        unique=True,
        postgresql_where=sa.text('active'),
        sqlite_where=sa.text('active'),
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('invoice_number', sa.String(64), nullable=False),
        sa.Column('user_id', sa.BigInteger, nullable=False),
        sa.Column('subscription_id', sa.BigInteger, sa.ForeignKey('subscriptions.id')),
        sa.Column('purchase_type', sa.String(30), nullable=False),
        _money('subtotal', server_default='0', nullable=False),
        _money('discount_amount', server_default='0', nullable=False),
        _money('tax_amount', server_default='0', nullable=False),
        _money('amount', server_default='0', nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('status', sa.String(20), server_default='PENDING', nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_date', sa.DateTime(timezone=True)),
        sa.Column('coupon_code', sa.String(50)),
        sa.Column('idempotency_key', sa.String(255)),
        sa.Column('description', sa.String(500)),
        sa.Column('notes', sa.Text),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_invoices_user_idempotency_key'),
    )
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'], unique=True)
    op.create_index('ix_invoices_user_id', 'invoices', ['user_id'])
    op.create_index('ix_invoices_subscription_id', 'invoices', ['subscription_id'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_coupon_code', 'invoices', ['coupon_code'])

    op.create_table(
        'invoice_items',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('invoice_id', sa.BigInteger, sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.String(500)),
        sa.Column('quantity', sa.Integer, server_default='1', nullable=False),
        _money('unit_price', nullable=False),
        _money('total_price', nullable=False),
        sa.Column('metadata', JSON),
        *_timestamps(),
    )
    op.create_index('ix_invoice_items_invoice_id', 'invoice_items', ['invoice_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('invoice_id', sa.BigInteger, sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('user_id', sa.BigInteger, nullable=False),
        _money('amount', nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('status', sa.String(20), server_default='PENDING', nullable=False),
        sa.Column('payment_method', sa.String(50)),
        sa.Column('payment_provider', sa.String(50), server_default='stripe', nullable=False),
        sa.Column('transaction_id', sa.String(255)),
        sa.Column('bank_transaction_id', sa.String(255)),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        sa.Column('metadata', JSON),
        *_timestamps(),
    )
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'], unique=True)

    op.create_table(
        'refunds',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('invoice_id', sa.BigInteger, sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('payment_id', sa.BigInteger, sa.ForeignKey('payments.id')),
        sa.Column('user_id', sa.BigInteger, nullable=False),
        _money('amount', nullable=False),
        sa.Column('reason', sa.String(500)),
        sa.Column('status', sa.String(20), server_default='PENDING', nullable=False),
        sa.Column('processed_by', sa.BigInteger),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('refunded_at', sa.DateTime(timezone=True)),
        sa.Column('notes', sa.Text),
        *_timestamps(),
    )
    op.create_index('ix_refunds_invoice_id', 'refunds', ['invoice_id'])
    op.create_index('ix_refunds_user_id', 'refunds', ['user_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])

    op.create_table(
        'coupons',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        _money('discount_value', nullable=False),
        _money('min_purchase_amount'),
        sa.Column('max_uses', sa.Integer),
        sa.Column('max_uses_per_user', sa.Integer),
        sa.Column('valid_from', sa.DateTime(timezone=True)),
        sa.Column('valid_until', sa.DateTime(timezone=True)),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('applicable_tiers', JSON),
        sa.Column('applicable_cycles', JSON),
        sa.Column('purchase_types', JSON),
        *_timestamps(),
    )
    op.create_index('ix_coupons_code', 'coupons', ['code'], unique=True)

    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    """Drop the billing tables."""
    op.drop_table('processed_webhook_events')
    op.drop_table('coupons')
    op.drop_table('refunds')
    op.drop_table('payments')
    op.drop_table('invoice_items')
    op.drop_table('invoices')
    op.drop_table('subscription_prices')
    op.drop_table('subscriptions')
