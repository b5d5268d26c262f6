"""
Alembic migration: Initial schema for orders, payments and delivery.

Creates customers with their address book, the catalog, orders with their
item snapshots and the append-only payment attempt log.

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000
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

ENUM_TYPES = {
    'order_status': ('pending', 'confirmed', 'shipped', 'delivered', 'cancelled', 'failed'),
    'payment_status': ('pending', 'paid', 'failed', 'cancelled'),
    'delivery_provider': ('self', 'courier'),
    'delivery_status': ('PENDING', 'SHIPMENT_CREATED', 'IN_TRANSIT', 'DELIVERED', 'RTO'),
    'attempt_source': (
        'order_created',
        'client_callback',
        'webhook',
        'manual_check',
        'client_cancel',
    ),
    'attempt_status': ('created', 'signature_verified', 'paid', 'failed', 'cancelled'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """
    Create all tables, enum types and indexes.
    """
    for name, values in ENUM_TYPES.items():
        postgresql.ENUM(*values, name=name).create(op.get_bind(), checkfirst=True)

    op.create_table(
        'customers',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_customers'),
        sa.UniqueConstraint('email', name='uq_customers_email'),
    )

    op.create_table(
        'customer_addresses',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('first_name', sa.String(length=60), nullable=False),
        sa.Column('last_name', sa.String(length=60), nullable=True),
        sa.Column('street', sa.String(length=255), nullable=False),
        sa.Column('city', sa.String(length=100), nullable=False),
        sa.Column('state', sa.String(length=100), nullable=False),
        sa.Column('postal_code', sa.String(length=6), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_customer_addresses'),
        sa.ForeignKeyConstraint(
            ['customer_id'],
            ['customers.id'],
            name='fk_customer_addresses_customer_id',
            ondelete='CASCADE',
        ),
    )
    op.create_index(
        'ix_customer_addresses_customer_id', 'customer_addresses', ['customer_id']
    )

    op.create_table(
        'items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('unit_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('stock_qty', sa.Integer(), nullable=False),
        sa.Column(
            'weight_grams',
            sa.Integer(),
            nullable=False,
            comment='Shipping weight of one unit',
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_items'),
        sa.CheckConstraint('stock_qty >= 0', name='ck_items_stock_non_negative'),
        sa.CheckConstraint('unit_price >= 0', name='ck_items_unit_price_non_negative'),
    )

    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            'address_id',
            postgresql.UUID(as_uuid=True),
            nullable=False,
            comment="Delivery address, resolved from the customer's address book",
        ),
        sa.Column('status', _enum('order_status'), nullable=False),
        sa.Column('payment_status', _enum('payment_status'), nullable=False),
        sa.Column(
            'delivery_provider',
            _enum('delivery_provider'),
            nullable=False,
            comment='Assigned at quote time, never changed',
        ),
        sa.Column('delivery_charge', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('subtotal', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column(
            'total_amount',
            sa.BigInteger(),
            nullable=False,
            comment='Grand total in minor currency units',
        ),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('total_weight_grams', sa.Integer(), nullable=False),
        sa.Column(
            'gateway_order_id',
            sa.String(length=64),
            nullable=True,
            comment='Payment gateway order reference',
        ),
        sa.Column(
            'pricing_breakdown',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column('waybill', sa.String(length=64), nullable=True),
        sa.Column('delivery_status', _enum('delivery_status'), nullable=True),
        sa.Column(
            'shipment_attempts',
            sa.Integer(),
            nullable=False,
            server_default=sa.text('0'),
        ),
        sa.Column('shipment_last_error', sa.Text(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stock_released_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.ForeignKeyConstraint(
            ['customer_id'],
            ['customers.id'],
            name='fk_orders_customer_id',
            ondelete='RESTRICT',
        ),
        sa.ForeignKeyConstraint(
            ['address_id'],
            ['customer_addresses.id'],
            name='fk_orders_address_id',
            ondelete='RESTRICT',
        ),
        sa.UniqueConstraint('gateway_order_id', name='uq_orders_gateway_order_id'),
        sa.CheckConstraint('total_amount > 0', name='ck_orders_total_amount_positive'),
        sa.CheckConstraint('shipment_attempts >= 0', name='ck_orders_shipment_attempts'),
        comment='Customer orders with payment and delivery state',
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_waybill', 'orders', ['waybill'])
    op.create_index(
        'ix_orders_status_payment_status', 'orders', ['status', 'payment_status']
    )
    op.create_index(
        'ix_orders_shipment_pending',
        'orders',
        ['delivery_provider', 'shipment_attempts'],
        postgresql_where=sa.text('waybill IS NULL'),
    )

    op.create_table(
        'order_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('item_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('weight_grams', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_items_order_id',
            ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['item_id'],
            ['items.id'],
            name='fk_order_items_item_id',
            ondelete='RESTRICT',
        ),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('unit_price >= 0', name='ck_order_items_unit_price'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'payment_attempts',
        sa.Column('id', sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source', _enum('attempt_source'), nullable=False),
        sa.Column('status', _enum('attempt_status'), nullable=False),
        sa.Column('gateway_order_id', sa.String(length=64), nullable=True),
        sa.Column('gateway_payment_id', sa.String(length=64), nullable=True),
        sa.Column(
            'amount',
            sa.BigInteger(),
            nullable=True,
            comment='Claimed amount, minor units',
        ),
        sa.Column('method', sa.String(length=32), nullable=True),
        sa.Column('signature_verified', sa.Boolean(), nullable=False),
        sa.Column('error_reason', sa.Text(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_payment_attempts'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_payment_attempts_order_id',
            ondelete='CASCADE',
        ),
    )
    op.create_index('ix_payment_attempts_order_id', 'payment_attempts', ['order_id'])
    op.create_index(
        'ix_payment_attempts_gateway_payment_id',
        'payment_attempts',
        ['gateway_payment_id'],
    )


def downgrade() -> None:
    """
    Drop all tables and enum types in reverse dependency order.
    """
    op.drop_table('payment_attempts')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('items')
    op.drop_table('customer_addresses')
    op.drop_table('customers')

    for name in reversed(list(ENUM_TYPES)):
        postgresql.ENUM(name=name).drop(op.get_bind(), checkfirst=True)
