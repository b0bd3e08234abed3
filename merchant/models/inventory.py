# merchant/models/inventory.py
from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint,
)

from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class InventoryLevel(Base):
    """
    Per-tenant, per-SKU stock counters.

    Only ever mutated through single conditional UPDATE statements issued by
    InventoryLedger; the check constraints are the store-level backstop for
    0 <= reserved <= on_hand.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("store_id", "sku", name="uq_inventory_store_sku"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_inventory_reserved_le_on_hand"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    sku = Column(String, nullable=False)
    on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def __repr__(self):
        return (f"<InventoryLevel(store={self.store_id}, sku='{self.sku}', "
                f"on_hand={self.on_hand}, reserved={self.reserved})>")


class InventoryLog(Base):
    """
    Append-only audit record of a signed delta against a SKU.

    (order_id, sku, reason) is unique so a sale commit for a given order line
    can only ever be logged -- and therefore applied -- once.
    """
    __tablename__ = "inventory_logs"
    __table_args__ = (
        UniqueConstraint("order_id", "sku", "reason", name="uq_inventory_logs_order_sku_reason"),
        Index("idx_inventory_logs_store_sku", "store_id", "sku"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False)
    sku = Column(String, nullable=False)
    delta = Column(Integer, nullable=False)
    reason = Column(String(16), nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
