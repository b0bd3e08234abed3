from typing import Any, Dict, Optional


class MerchantError(Exception):
    """Base exception for all errors surfaced to API callers."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequestError(MerchantError):
    """Malformed input or caller error. Never retried by the system."""
    code = "invalid_request"
    status_code = 400


class NotFoundError(MerchantError):
    """Raised when a tenant-scoped record does not exist."""
    code = "not_found"
    status_code = 404


class ConflictError(MerchantError):
    """State-machine violation, e.g. checking out a cart that is not open."""
    code = "conflict"
    status_code = 409


class InvalidStateError(MerchantError):
    """Raised when a ledger mutation would break 0 <= reserved <= on_hand."""
    code = "invalid_state"
    status_code = 409


class InsufficientInventoryError(MerchantError):
    """Raised when a reservation cannot be satisfied from available stock."""
    code = "insufficient_inventory"
    status_code = 409

    def __init__(self, sku: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Insufficient inventory for SKU: {sku}", {"sku": sku, **(details or {})})
        self.sku = sku


class DiscountInvalidError(MerchantError):
    """Discount is inactive, outside its window or not applicable."""
    code = "discount_invalid"
    status_code = 400


class DiscountLimitExhaustedError(MerchantError):
    """Raised when the conditional usage increment affects zero rows."""
    code = "discount_limit_exhausted"
    status_code = 409


class UpstreamPaymentError(MerchantError):
    """Failure reported by the external payment provider."""
    code = "upstream_payment_error"
    status_code = 502


class WebhookSignatureError(MerchantError):
    """Inbound payment webhook with a missing or invalid signature."""
    code = "webhook_signature_invalid"
    status_code = 400


class DeliveryError(Exception):
    """Outbound webhook attempt failed. Retried by the dispatcher, never surfaced."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
