# merchant/models/payment_event.py
from sqlalchemy import JSON, Column, DateTime, ForeignKey, String

from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class PaymentEvent(Base):
    """
    Deduplication ledger for inbound payment-provider events.

    Every event is recorded by its external identifier. Before processing,
    ingestion checks this table; an existing row means the event was already
    applied and the delivery is acknowledged without reprocessing.
    """
    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    external_id = Column(String, unique=True, nullable=False)  # e.g. "evt_1Abc..."
    type = Column(String, nullable=False)  # e.g. "checkout.session.completed"
    payload = Column(JSON, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<PaymentEvent {self.external_id} ({self.type})>"
