# merchant/models/catalog.py
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from merchant.core.enums import VariantStatus
from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class Variant(Base):
    """
    Read-only view of the catalog collaborator: SKU -> title, unit price, status.
    Prices are snapshotted onto cart items when they are added.
    """
    __tablename__ = "variants"
    __table_args__ = (UniqueConstraint("store_id", "sku", name="uq_variants_store_sku"),)

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    sku = Column(String, nullable=False)
    title = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(16), nullable=False, default=VariantStatus.ACTIVE.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == VariantStatus.ACTIVE.value
