# merchant/models/discount.py
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint

from merchant.core.enums import DiscountStatus
from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class Discount(Base):
    """
    usage_count never exceeds usage_limit (when set): it is only incremented by
    the conditional UPDATE in DiscountLimiter.reserve_usage.
    """
    __tablename__ = "discounts"
    __table_args__ = (UniqueConstraint("store_id", "code", name="uq_discounts_store_code"),)

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    code = Column(String, nullable=True)
    type = Column(String(16), nullable=False)
    value = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default=DiscountStatus.ACTIVE.value)

    min_purchase_cents = Column(Integer, nullable=False, default=0)
    max_discount_cents = Column(Integer, nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    usage_limit = Column(Integer, nullable=True)  # NULL = unlimited
    usage_limit_per_customer = Column(Integer, nullable=True, default=1)
    usage_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class DiscountUsage(Base):
    """One per (order, discount); the unique pair is the idempotency guard."""
    __tablename__ = "discount_usage"
    __table_args__ = (
        UniqueConstraint("order_id", "discount_id", name="uq_discount_usage_order_discount"),
        Index("idx_discount_usage_customer", "discount_id", "customer_email"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    discount_id = Column(String(36), ForeignKey("discounts.id"), nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    customer_email = Column(String, nullable=False)
    discount_amount_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
