# merchant/models/store.py
from sqlalchemy import Column, DateTime, Integer, String

from merchant.core.enums import StoreStatus
from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class Store(Base):
    """
    Tenant record. Owned by the store/provider-credential setup surface;
    the fulfillment core only reads it.
    """
    __tablename__ = "stores"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default=StoreStatus.ENABLED.value)

    payment_secret_key = Column(String, nullable=True)
    payment_webhook_secret = Column(String, nullable=True)

    # Per-tenant override of settings.LOW_STOCK_THRESHOLD
    low_stock_threshold = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Store(id={self.id}, name='{self.name}', status='{self.status}')>"
