import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from merchant.core.config import get_settings
from merchant.core.exceptions import UpstreamPaymentError, WebhookSignatureError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]


def _encode_form(data: Dict[str, Any], prefix: str = "") -> List[tuple]:
    """Flatten nested dicts/lists into the provider's bracketed form encoding."""
    pairs = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            pairs.extend(_encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, entry in enumerate(value):
                entry_name = f"{name}[{index}]"
                if isinstance(entry, dict):
                    pairs.extend(_encode_form(entry, entry_name))
                else:
                    pairs.append((entry_name, str(entry)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        elif value is not None:
            pairs.append((name, str(value)))
    return pairs


def verify_webhook_signature(
    body: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Verify a `t=<unix>,v1=<hex>` signature header and return the parsed event.

    The signed message is "<t>.<raw body>" keyed with the store's webhook secret.
    """
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed signature header")
    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed signature timestamp")

    now = int(time.time()) if now is None else now
    if tolerance_seconds and abs(now - signed_at) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = hmac.new(
        secret.encode(),
        f"{timestamp}.".encode() + body,
        hashlib.sha256,
    ).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Invalid signature")

    try:
        return json.loads(body)
    except ValueError:
        raise WebhookSignatureError("Signed payload is not valid JSON")


class PaymentClient:
    """
    Client for the hosted-checkout payment provider.
    Each call authenticates with the calling store's own secret key.
    """

    def __init__(self, api_base: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        self.api_base = (api_base or settings.PAYMENT_API_BASE).rstrip("/")
        self._client = http_client
        self._timeout = settings.PAYMENT_TIMEOUT_SECONDS

    async def _post(self, secret_key: str, path: str, form: Dict[str, Any]) -> Dict[str, Any]:
        if not secret_key:
            raise UpstreamPaymentError("Payment provider not connected for this store")

        headers = {"Authorization": f"Bearer {secret_key}"}
        url = f"{self.api_base}{path}"
        payload = dict(_encode_form(form))
        try:
            if self._client is not None:
                response = await self._client.post(url, data=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, data=payload, headers=headers)
        except httpx.RequestError as e:
            logger.error(f"Network error calling payment provider {path}: {str(e)}")
            raise UpstreamPaymentError(f"Network error calling payment provider: {str(e)}")

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message") or response.text
            except ValueError:
                message = response.text
            logger.error(f"Payment provider error on {path}: {response.status_code} {message}")
            raise UpstreamPaymentError(f"Payment provider error: {message}", {"status": response.status_code})

        return response.json()

    async def create_checkout_session(
        self,
        secret_key: str,
        *,
        customer_email: str,
        line_items: List[Dict[str, Any]],
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        discount_amount_cents: int = 0,
        discount_code: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout session for a cart snapshot.

        line_items: [{"title", "qty", "unit_price_cents"}]

        A quoted discount is sent as a single-use amount-off coupon, so the
        provider charges subtotal minus discount, matching the order total.
        """
        form: Dict[str, Any] = {
            "mode": "payment",
            "customer_email": customer_email,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": item["title"]},
                        "unit_amount": item["unit_price_cents"],
                    },
                    "quantity": item["qty"],
                }
                for item in line_items
            ],
        }
        if discount_amount_cents:
            form["metadata"] = {**metadata, "discount_amount_cents": str(discount_amount_cents)}
            coupon = await self.create_coupon(
                secret_key,
                amount_off_cents=discount_amount_cents,
                currency=currency,
                name=discount_code,
            )
            form["discounts"] = [{"coupon": coupon["id"]}]

        data = await self._post(secret_key, "/checkout/sessions", form)
        return CheckoutSession(id=data["id"], url=data.get("url"))

    async def create_coupon(
        self,
        secret_key: str,
        *,
        amount_off_cents: int,
        currency: str,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        form: Dict[str, Any] = {
            "amount_off": amount_off_cents,
            "currency": currency.lower(),
            "duration": "once",
            "max_redemptions": 1,
            "name": name,
        }
        return await self._post(secret_key, "/coupons", form)

    async def create_refund(
        self,
        secret_key: str,
        *,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
    ) -> Dict[str, Any]:
        form: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents:
            form["amount"] = amount_cents
        return await self._post(secret_key, "/refunds", form)

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
