"""
Alembic migration: Create order, payment ledger and settings schema.

Creates orders and their items, the append-only order_payments ledger with
partial unique indexes on every gateway identifier, payment plans, the
webhook event ledger, cash-on-delivery tracking and the key/value settings
table that holds gateway credentials.

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    'payment_gateway': ('card', 'regional', 'cod'),
    'payment_type': ('full', 'deposit', 'balance'),
    'payment_record_status': ('succeeded', 'failed', 'refunded'),
    'payment_plan_status': ('pending', 'deposit_paid', 'fully_paid'),
    'webhook_event_status': ('processed', 'failed'),
    'cod_status': ('pending', 'collected', 'failed', 'returned'),
    'cod_failure_reason': ('not_home', 'refused', 'no_cash', 'wrong_address', 'other'),
    'order_payment_status': ('unpaid', 'partial', 'paid', 'refunded', 'failed'),
    'fulfillment_status': (
        'pending',
        'processing',
        'confirmed',
        'shipped',
        'delivered',
        'completed',
        'cancelled',
        'returned',
    ),
    'inventory_pool': ('regular', 'preorder', 'backorder'),
}

GATEWAY_IDENTIFIER_COLUMNS = (
    'card_intent_id',
    'card_charge_id',
    'regional_transaction_id',
    'regional_validation_id',
    'regional_bank_transaction_id',
)


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _id_column() -> sa.Column:
    return sa.Column(
        'id',
        postgresql.UUID(as_uuid=True),
        nullable=False,
        server_default=sa.text('gen_random_uuid()'),
        comment='Unique identifier for the record',
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
    ]


def upgrade() -> None:
    """
    Create the settlement schema.

    Enum types are created up front and referenced with create_type=False so
    orders and order_payments can share payment_gateway.
    """
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(op.get_bind(), checkfirst=True)

    op.create_table(
        'orders',
        _id_column(),
        sa.Column('order_number', sa.String(length=50), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('paid_amount', sa.BigInteger(), nullable=False, server_default=sa.text('0')),
        sa.Column('balance_due', sa.BigInteger(), nullable=False),
        sa.Column(
            'payment_status',
            _enum('order_payment_status'),
            nullable=False,
            server_default=sa.text("'unpaid'"),
        ),
        sa.Column(
            'fulfillment_status',
            _enum('fulfillment_status'),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column(
            'inventory_pool',
            _enum('inventory_pool'),
            nullable=False,
            server_default=sa.text("'regular'"),
        ),
        sa.Column('payment_method', _enum('payment_gateway'), nullable=True),
        sa.Column('return_reason', sa.Text(), nullable=True),
        sa.Column('returned_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
        sa.CheckConstraint('paid_amount >= 0', name='ck_orders_paid_non_negative'),
        sa.CheckConstraint(
            'balance_due = GREATEST(total_amount - paid_amount, 0)',
            name='ck_orders_balance_due_derived',
        ),
    )
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_fulfillment_status', 'orders', ['fulfillment_status'])
    op.create_index('ix_orders_status_pair', 'orders', ['payment_status', 'fulfillment_status'])

    op.create_table(
        'order_items',
        _id_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', sa.String(length=100), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_order_items_order_id', ondelete='CASCADE'
        ),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_payments',
        _id_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='Amount in minor currency units'),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_method', _enum('payment_gateway'), nullable=False),
        sa.Column('payment_type', _enum('payment_type'), nullable=False),
        sa.Column('status', _enum('payment_record_status'), nullable=False),
        *(
            sa.Column(column, sa.String(length=255), nullable=True)
            for column in GATEWAY_IDENTIFIER_COLUMNS
        ),
        sa.Column('cod_collected_by', sa.String(length=255), nullable=True),
        sa.Column('cod_collected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cod_receipt_url', sa.String(length=1024), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_order_payments'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_order_payments_order_id', ondelete='RESTRICT'
        ),
        sa.CheckConstraint('amount >= 0', name='ck_order_payments_amount_non_negative'),
        sa.CheckConstraint("currency ~ '^[A-Z]{3}$'", name='ck_order_payments_currency_format'),
        comment='Append-only ledger of settlement, refund and failed attempts',
    )
    op.create_index('ix_order_payments_order_id', 'order_payments', ['order_id'])
    op.create_index('ix_order_payments_order_created', 'order_payments', ['order_id', 'created_at'])
    op.create_index('ix_order_payments_order_status', 'order_payments', ['order_id', 'status'])
    for column in GATEWAY_IDENTIFIER_COLUMNS:
        op.create_index(
            f'uq_order_payments_{column}_succeeded',
            'order_payments',
            [column],
            unique=True,
            postgresql_where=sa.text("status = 'succeeded'"),
        )

    op.create_table(
        'payment_plans',
        _id_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('deposit_amount', sa.BigInteger(), nullable=False),
        sa.Column(
            'status',
            _enum('payment_plan_status'),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column('balance_due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deposit_paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('balance_paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_payment_plans'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_payment_plans_order_id', ondelete='CASCADE'
        ),
        sa.UniqueConstraint('order_id', name='uq_payment_plans_order_id'),
        sa.CheckConstraint(
            'deposit_amount >= 0 AND deposit_amount <= total_amount',
            name='ck_payment_plans_deposit_range',
        ),
    )

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(length=255), nullable=False, comment='Provider assigned event id'),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('status', _enum('webhook_event_status'), nullable=False),
        sa.Column('result', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_webhook_events'),
    )
    op.create_index('ix_webhook_events_order_id', 'webhook_events', ['order_id'])

    op.create_table(
        'cod_tracking',
        _id_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            'cod_status',
            _enum('cod_status'),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('collected_by', sa.String(length=255), nullable=True),
        sa.Column('collected_amount', sa.BigInteger(), nullable=True),
        sa.Column('collected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('receipt_url', sa.String(length=1024), nullable=True),
        sa.Column('failure_reason', _enum('cod_failure_reason'), nullable=True),
        sa.Column('failure_notes', sa.Text(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_cod_tracking'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_cod_tracking_order_id', ondelete='CASCADE'
        ),
        sa.UniqueConstraint('order_id', name='uq_cod_tracking_order_id'),
        sa.CheckConstraint('delivery_attempts >= 0', name='ck_cod_tracking_attempts_non_negative'),
    )

    op.create_table(
        'settings',
        _id_column(),
        sa.Column('category', sa.String(length=50), nullable=False),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.Text(), nullable=False, server_default=sa.text("''")),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_settings'),
        sa.UniqueConstraint('category', 'key', name='uq_settings_category_key'),
    )
    op.create_index('ix_settings_category', 'settings', ['category'])


def downgrade() -> None:
    """Drop the settlement schema and its enum types."""
    op.drop_index('ix_settings_category', table_name='settings')
    op.drop_table('settings')
    op.drop_table('cod_tracking')
    op.drop_index('ix_webhook_events_order_id', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_table('payment_plans')

    for column in GATEWAY_IDENTIFIER_COLUMNS:
        op.drop_index(f'uq_order_payments_{column}_succeeded', table_name='order_payments')
    op.drop_index('ix_order_payments_order_status', table_name='order_payments')
    op.drop_index('ix_order_payments_order_created', table_name='order_payments')
    op.drop_index('ix_order_payments_order_id', table_name='order_payments')
    op.drop_table('order_payments')

    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')

    op.drop_index('ix_orders_status_pair', table_name='orders')
    op.drop_index('ix_orders_fulfillment_status', table_name='orders')
    op.drop_index('ix_orders_payment_status', table_name='orders')
    op.drop_table('orders')

    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(op.get_bind(), checkfirst=True)
