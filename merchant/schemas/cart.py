from datetime import datetime
from typing import List, Optional

from pydantic import Field

from merchant.schemas.base import BaseSchema


class CartCreate(BaseSchema):
    customer_email: str


class CartItemIn(BaseSchema):
    sku: str
    qty: int = Field(..., ge=1)


class CartItemsSet(BaseSchema):
    items: List[CartItemIn] = Field(..., min_length=1)


class CartDiscountApply(BaseSchema):
    code: str


class CheckoutRequest(BaseSchema):
    success_url: str
    cancel_url: str


class CartItemRead(BaseSchema):
    sku: str
    title: str
    qty: int
    unit_price_cents: int


class CartRead(BaseSchema):
    id: str
    status: str
    currency: str
    customer_email: str
    items: List[CartItemRead] = Field(default_factory=list)
    subtotal_cents: int
    discount_code: Optional[str] = None
    discount_amount_cents: int = 0
    expires_at: datetime
    checkout_session_id: Optional[str] = None


class CheckoutRead(BaseSchema):
    checkout_url: Optional[str] = None
    checkout_session_id: str
