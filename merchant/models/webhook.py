# merchant/models/webhook.py
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from merchant.core.enums import DeliveryStatus, SubscriptionStatus
from merchant.core.utils import new_id, utcnow
from merchant.database import Base


class WebhookSubscription(Base):
    """Tenant-registered outbound endpoint with its event patterns and signing secret."""
    __tablename__ = "webhook_subscriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    url = Column(String, nullable=False)
    events = Column(JSON, nullable=False)  # list of patterns: "order.created", "order.*", "*"
    secret = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    deliveries = relationship("WebhookDelivery", back_populates="subscription", passive_deletes=True)

    def matches(self, event_type: str) -> bool:
        """Exact match, global wildcard, or 'prefix.*' matching the event namespace."""
        for pattern in self.events or []:
            if pattern == "*" or pattern == event_type:
                return True
            if pattern.endswith(".*") and event_type.startswith(pattern[:-2] + "."):
                return True
        return False


class WebhookDelivery(Base):
    """
    Persisted, inspectable state of one (subscription, event) delivery.

    This row is the work queue: a restart loses no retry schedule because the
    scheduler rescans pending/failed rows rather than holding timers.
    """
    __tablename__ = "webhook_deliveries"

    id = Column(String(36), primary_key=True, default=new_id)
    subscription_id = Column(
        String(36), ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    subscription = relationship("WebhookSubscription", back_populates="deliveries")

    def __repr__(self):
        return (f"<WebhookDelivery(id={self.id}, event='{self.event_type}', "
                f"status='{self.status}', attempts={self.attempts})>")
