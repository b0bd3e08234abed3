"""
Core module exports.
"""
from .enums import (
    CartStatus,
    DeliveryStatus,
    DiscountStatus,
    DiscountType,
    InventoryReason,
    OrderStatus,
    WebhookEventType,
)

from .exceptions import (
    MerchantError,
    InvalidRequestError,
    NotFoundError,
    ConflictError,
    InvalidStateError,
    InsufficientInventoryError,
    DiscountInvalidError,
    DiscountLimitExhaustedError,
    UpstreamPaymentError,
    WebhookSignatureError,
    DeliveryError,
)
