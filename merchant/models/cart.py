# merchant/models/cart.py
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from merchant.core.enums import CartStatus
from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class Cart(Base):
    """Cart lifecycle: open -> checked_out -> expired."""
    __tablename__ = "carts"

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=CartStatus.OPEN.value, index=True)
    customer_email = Column(String, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    checkout_session_id = Column(String, nullable=True, index=True)
    checkout_url = Column(String, nullable=True)

    discount_id = Column(String(36), ForeignKey("discounts.id"), nullable=True, index=True)
    discount_code = Column(String, nullable=True)
    discount_amount_cents = Column(Integer, nullable=False, default=0)

    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    checked_out_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.position",
    )

    @property
    def subtotal_cents(self) -> int:
        return sum(item.qty * item.unit_price_cents for item in self.items)

    def __repr__(self):
        return f"<Cart(id={self.id}, status='{self.status}', items={len(self.items)})>"


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(String(36), primary_key=True, default=new_id)
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    sku = Column(String, nullable=False)
    title = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)  # snapshot at add time

    cart = relationship("Cart", back_populates="items")
