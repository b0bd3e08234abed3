from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from merchant.core.enums import OrderStatus
from merchant.schemas.base import BaseSchema


class OrderItemRead(BaseSchema):
    sku: str
    title: str
    qty: int
    unit_price_cents: int


class OrderShipping(BaseSchema):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Dict[str, Any]] = None


class OrderAmounts(BaseSchema):
    subtotal_cents: int
    discount_cents: int = 0
    tax_cents: int = 0
    shipping_cents: int = 0
    total_cents: int
    currency: str


class OrderTracking(BaseSchema):
    number: Optional[str] = None
    url: Optional[str] = None
    shipped_at: Optional[datetime] = None


class OrderPayment(BaseSchema):
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class OrderDiscount(BaseSchema):
    code: str
    amount_cents: int


class OrderRead(BaseSchema):
    id: str
    number: str
    status: str
    customer_email: str
    customer_id: Optional[str] = None
    shipping: OrderShipping
    amounts: OrderAmounts
    discount: Optional[OrderDiscount] = None
    tracking: OrderTracking
    payment: OrderPayment
    items: List[OrderItemRead] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_order(cls, order) -> "OrderRead":
        return cls(
            id=order.id,
            number=order.number,
            status=order.status,
            customer_email=order.customer_email,
            customer_id=order.customer_id,
            shipping=OrderShipping(name=order.shipping_name, phone=order.shipping_phone, address=order.ship_to),
            amounts=OrderAmounts(
                subtotal_cents=order.subtotal_cents,
                discount_cents=order.discount_amount_cents or 0,
                tax_cents=order.tax_cents,
                shipping_cents=order.shipping_cents,
                total_cents=order.total_cents,
                currency=order.currency,
            ),
            discount=(
                OrderDiscount(code=order.discount_code, amount_cents=order.discount_amount_cents or 0)
                if order.discount_code else None
            ),
            tracking=OrderTracking(
                number=order.tracking_number, url=order.tracking_url, shipped_at=order.shipped_at
            ),
            payment=OrderPayment(
                checkout_session_id=order.checkout_session_id, payment_intent_id=order.payment_intent_id
            ),
            items=[OrderItemRead.model_validate(item) for item in order.items],
            created_at=order.created_at,
        )


class OrderUpdate(BaseSchema):
    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None


class RefundRequest(BaseSchema):
    amount_cents: Optional[int] = Field(None, ge=1)


class RefundRead(BaseSchema):
    provider_refund_id: str
    amount_cents: int
    status: str
