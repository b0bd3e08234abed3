from .client import CheckoutSession, PaymentClient, verify_webhook_signature

__all__ = ["CheckoutSession", "PaymentClient", "verify_webhook_signature"]
