"""
Shared enums and constants used across the application.
"""

from enum import Enum


class StoreStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class VariantStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"


class InventoryReason(str, Enum):
    """Reason tags for inventory log entries"""
    RESTOCK = "restock"
    CORRECTION = "correction"
    DAMAGED = "damaged"
    RETURN = "return"
    SALE = "sale"
    RELEASE = "release"

    @classmethod
    def adjustable(cls):
        # Reasons a caller may pass to a manual adjustment
        return {cls.RESTOCK, cls.CORRECTION, cls.DAMAGED, cls.RETURN}


class CartStatus(str, Enum):
    OPEN = "open"
    CHECKED_OUT = "checked_out"
    EXPIRED = "expired"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUNDED = "refunded"
    CANCELED = "canceled"


# Forward path plus the refunded/canceled side exits.
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.REFUNDED, OrderStatus.CANCELED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.REFUNDED, OrderStatus.CANCELED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.REFUNDED: set(),
    OrderStatus.CANCELED: set(),
}


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class DiscountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class WebhookEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_SHIPPED = "order.shipped"
    ORDER_REFUNDED = "order.refunded"
    INVENTORY_LOW = "inventory.low"


# Patterns a subscription may register besides the concrete event types.
WEBHOOK_WILDCARDS = ("order.*", "inventory.*", "*")


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
