# merchant/models/order.py
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from merchant.core.enums import OrderStatus
from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class Order(Base):
    """
    Created exactly once per completed checkout session.

    (store_id, checkout_session_id) is unique: a re-run of payment ingestion
    finds the existing order instead of inserting a second one.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("store_id", "number", name="uq_orders_store_number"),
        UniqueConstraint("store_id", "checkout_session_id", name="uq_orders_store_checkout_session"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    number = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default=OrderStatus.PAID.value, index=True)
    customer_email = Column(String, nullable=False)

    # Shipping info (captured at checkout time)
    shipping_name = Column(String, nullable=True)
    shipping_phone = Column(String, nullable=True)
    ship_to = Column(JSON, nullable=True)

    subtotal_cents = Column(Integer, nullable=False)
    discount_amount_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    shipping_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    discount_id = Column(String(36), ForeignKey("discounts.id"), nullable=True)
    discount_code = Column(String, nullable=True)

    tracking_number = Column(String, nullable=True)
    tracking_url = Column(String, nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)

    checkout_session_id = Column(String, nullable=True)
    payment_intent_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.position",
    )
    refunds = relationship("Refund", back_populates="order", lazy="selectin")

    def __repr__(self):
        return f"<Order(id={self.id}, number='{self.number}', status='{self.status}')>"


class OrderItem(Base):
    """Immutable price/qty snapshot copied from the cart at finalization."""
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    sku = Column(String, nullable=False)
    title = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    provider_refund_id = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    order = relationship("Order", back_populates="refunds")
