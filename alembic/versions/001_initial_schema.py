"""Initial schema - creates all tables for the fulfillment core

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', sa.String(36), primary_key=True)


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'stores',
        _id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('payment_secret_key', sa.String(), nullable=True),
        sa.Column('payment_webhook_secret', sa.String(), nullable=True),
        sa.Column('low_stock_threshold', sa.Integer(), nullable=True),
        _ts('created_at'),
    )

    op.create_table(
        'variants',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        _ts('created_at'),
        sa.UniqueConstraint('store_id', 'sku', name='uq_variants_store_sku'),
    )
    op.create_index('ix_variants_store_id', 'variants', ['store_id'])

    op.create_table(
        'discounts',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('code', sa.String(), nullable=True),
        sa.Column('type', sa.String(16), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('min_purchase_cents', sa.Integer(), nullable=False),
        sa.Column('max_discount_cents', sa.Integer(), nullable=True),
        _ts('starts_at', nullable=True),
        _ts('expires_at', nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_limit_per_customer', sa.Integer(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('store_id', 'code', name='uq_discounts_store_code'),
    )
    op.create_index('ix_discounts_store_id', 'discounts', ['store_id'])

    op.create_table(
        'customers',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('order_count', sa.Integer(), nullable=False),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False),
        _ts('last_order_at', nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('store_id', 'email', name='uq_customers_store_email'),
    )
    op.create_index('ix_customers_store_id', 'customers', ['store_id'])

    op.create_table(
        'customer_addresses',
        _id(),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('line1', sa.String(), nullable=False),
        sa.Column('line2', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=False),
        sa.Column('state', sa.String(), nullable=True),
        sa.Column('postal_code', sa.String(), nullable=False),
        sa.Column('country', sa.String(2), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        _ts('created_at'),
    )
    op.create_index('ix_customer_addresses_customer_id', 'customer_addresses', ['customer_id'])

    op.create_table(
        'carts',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('customer_email', sa.String(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('checkout_session_id', sa.String(), nullable=True),
        sa.Column('checkout_url', sa.String(), nullable=True),
        sa.Column('discount_id', sa.String(36), sa.ForeignKey('discounts.id'), nullable=True),
        sa.Column('discount_code', sa.String(), nullable=True),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=False),
        _ts('expires_at'),
        _ts('checked_out_at', nullable=True),
        _ts('created_at'),
    )
    op.create_index('ix_carts_store_id', 'carts', ['store_id'])
    op.create_index('ix_carts_status', 'carts', ['status'])
    op.create_index('ix_carts_checkout_session_id', 'carts', ['checkout_session_id'])
    op.create_index('ix_carts_discount_id', 'carts', ['discount_id'])
    op.create_index('ix_carts_expires_at', 'carts', ['expires_at'])

    op.create_table(
        'cart_items',
        _id(),
        sa.Column('cart_id', sa.String(36), sa.ForeignKey('carts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
    )
    op.create_index('ix_cart_items_cart_id', 'cart_items', ['cart_id'])

    op.create_table(
        'orders',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('customer_id', sa.String(36), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('number', sa.String(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('customer_email', sa.String(), nullable=False),
        sa.Column('shipping_name', sa.String(), nullable=True),
        sa.Column('shipping_phone', sa.String(), nullable=True),
        sa.Column('ship_to', sa.JSON(), nullable=True),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=False),
        sa.Column('tax_cents', sa.Integer(), nullable=False),
        sa.Column('shipping_cents', sa.Integer(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('discount_id', sa.String(36), sa.ForeignKey('discounts.id'), nullable=True),
        sa.Column('discount_code', sa.String(), nullable=True),
        sa.Column('tracking_number', sa.String(), nullable=True),
        sa.Column('tracking_url', sa.String(), nullable=True),
        _ts('shipped_at', nullable=True),
        sa.Column('checkout_session_id', sa.String(), nullable=True),
        sa.Column('payment_intent_id', sa.String(), nullable=True),
        _ts('created_at'),
        sa.UniqueConstraint('store_id', 'number', name='uq_orders_store_number'),
        sa.UniqueConstraint('store_id', 'checkout_session_id', name='uq_orders_store_checkout_session'),
    )
    op.create_index('ix_orders_store_id', 'orders', ['store_id'])
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'order_items',
        _id(),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'refunds',
        _id(),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('provider_refund_id', sa.String(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        _ts('created_at'),
    )
    op.create_index('ix_refunds_order_id', 'refunds', ['order_id'])

    op.create_table(
        'inventory',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('on_hand', sa.Integer(), nullable=False),
        sa.Column('reserved', sa.Integer(), nullable=False),
        _ts('updated_at'),
        sa.UniqueConstraint('store_id', 'sku', name='uq_inventory_store_sku'),
        sa.CheckConstraint('reserved >= 0', name='ck_inventory_reserved_non_negative'),
        sa.CheckConstraint('reserved <= on_hand', name='ck_inventory_reserved_le_on_hand'),
    )
    op.create_index('ix_inventory_store_id', 'inventory', ['store_id'])

    op.create_table(
        'inventory_logs',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(16), nullable=False),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=True),
        _ts('created_at'),
        sa.UniqueConstraint('order_id', 'sku', 'reason', name='uq_inventory_logs_order_sku_reason'),
    )
    op.create_index('idx_inventory_logs_store_sku', 'inventory_logs', ['store_id', 'sku'])

    op.create_table(
        'discount_usage',
        _id(),
        sa.Column('discount_id', sa.String(36), sa.ForeignKey('discounts.id'), nullable=False),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('customer_email', sa.String(), nullable=False),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=False),
        _ts('created_at'),
        sa.UniqueConstraint('order_id', 'discount_id', name='uq_discount_usage_order_discount'),
    )
    op.create_index('idx_discount_usage_customer', 'discount_usage', ['discount_id', 'customer_email'])

    op.create_table(
        'payment_events',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False, unique=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        _ts('processed_at'),
    )
    op.create_index('ix_payment_events_store_id', 'payment_events', ['store_id'])

    op.create_table(
        'webhook_subscriptions',
        _id(),
        sa.Column('store_id', sa.String(36), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('secret', sa.String(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        _ts('created_at'),
    )
    op.create_index('ix_webhook_subscriptions_store_id', 'webhook_subscriptions', ['store_id'])

    op.create_table(
        'webhook_deliveries',
        _id(),
        sa.Column(
            'subscription_id', sa.String(36),
            sa.ForeignKey('webhook_subscriptions.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        _ts('last_attempt_at', nullable=True),
        _ts('next_attempt_at', nullable=True),
        sa.Column('response_code', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        _ts('created_at'),
    )
    op.create_index('ix_webhook_deliveries_subscription_id', 'webhook_deliveries', ['subscription_id'])
    op.create_index('ix_webhook_deliveries_status', 'webhook_deliveries', ['status'])


def downgrade() -> None:
    for table in (
        'webhook_deliveries', 'webhook_subscriptions', 'payment_events', 'discount_usage',
        'inventory_logs', 'inventory', 'refunds', 'order_items', 'orders', 'cart_items',
        'carts', 'customer_addresses', 'customers', 'discounts', 'variants', 'stores',
    ):
        op.drop_table(table)
