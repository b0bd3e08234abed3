"""
Cart and checkout reservation sequence.

A cart moves open -> checked_out only after every line item holds a
reservation. The sequence is a chain of single-row conditional updates, each
committed on its own, with explicit compensation when a later step fails:

1. claim the cart (status open, checked_out_at NULL -> checked_out_at = now)
2. reserve each line item
3. take one use of the attached discount
4. open the provider checkout session
5. mark the cart checked_out and link the session

A failure at any step releases what the earlier steps took, clears the claim
and surfaces the error. Every intermediate state is a valid one: the reaper
treats a claimed-but-unfinished cart as abandoned after the grace period.
"""

import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.config import get_settings
from merchant.core.enums import CartStatus
from merchant.core.exceptions import (
    ConflictError,
    DiscountInvalidError,
    DiscountLimitExhaustedError,
    InsufficientInventoryError,
    InvalidRequestError,
    NotFoundError,
    UpstreamPaymentError,
)
from merchant.core.utils import as_utc, is_valid_email, utcnow
from merchant.models.cart import Cart, CartItem
from merchant.models.catalog import Variant
from merchant.models.discount import Discount
from merchant.models.inventory import InventoryLevel
from merchant.models.store import Store
from merchant.services.discount_limiter import DiscountLimiter, calculate_discount
from merchant.services.inventory_ledger import InventoryLedger
from merchant.services.payment import CheckoutSession, PaymentClient

logger = logging.getLogger(__name__)


class CartService:
    """Cart operations for one tenant."""

    def __init__(self, db: AsyncSession, store: Store, payment_client: Optional[PaymentClient] = None):
        self.db = db
        self.store = store
        self.payment_client = payment_client
        self.ledger = InventoryLedger(db, store.id)
        self.discounts = DiscountLimiter(db)
        self.settings = get_settings()

    async def create_cart(self, customer_email: str) -> Cart:
        if not is_valid_email(customer_email):
            raise InvalidRequestError("A valid customer_email is required")
        now = utcnow()
        cart = Cart(
            store_id=self.store.id,
            status=CartStatus.OPEN.value,
            customer_email=customer_email.strip().lower(),
            expires_at=now + timedelta(minutes=self.settings.CART_TTL_MINUTES),
            created_at=now,
        )
        self.db.add(cart)
        await self.db.commit()
        return await self.get_cart(cart.id)

    async def get_cart(self, cart_id: str) -> Cart:
        cart = await self.db.scalar(
            select(Cart)
            .where(Cart.id == cart_id, Cart.store_id == self.store.id)
            .execution_options(populate_existing=True)
        )
        if cart is None:
            raise NotFoundError("Cart not found")
        return cart

    async def _get_open_cart(self, cart_id: str) -> Cart:
        cart = await self.get_cart(cart_id)
        if cart.status != CartStatus.OPEN.value or cart.checked_out_at is not None:
            raise ConflictError(f"Cart is {cart.status}", {"status": cart.status})
        return cart

    async def set_items(self, cart_id: str, items: List[Tuple[str, int]]) -> Cart:
        """
        Replace the cart's line items. Titles and prices are snapshotted from
        the catalog now; availability is checked but nothing is held until
        checkout.
        """
        cart = await self._get_open_cart(cart_id)
        if not items:
            raise InvalidRequestError("At least one item is required")

        quantities = {}
        for sku, qty in items:
            if qty < 1:
                raise InvalidRequestError(f"Quantity for {sku} must be positive")
            quantities[sku] = quantities.get(sku, 0) + qty

        result = await self.db.execute(
            select(Variant).where(Variant.store_id == self.store.id, Variant.sku.in_(quantities))
        )
        variants = {variant.sku: variant for variant in result.scalars().all()}
        result = await self.db.execute(
            select(InventoryLevel).where(InventoryLevel.store_id == self.store.id, InventoryLevel.sku.in_(quantities))
        )
        levels = {level.sku: level for level in result.scalars().all()}

        for sku, qty in quantities.items():
            variant = variants.get(sku)
            if variant is None:
                raise NotFoundError(f"SKU not found: {sku}")
            if not variant.is_active:
                raise InvalidRequestError(f"SKU is not available for sale: {sku}")
            level = levels.get(sku)
            available = level.available if level is not None else 0
            if available < qty:
                raise InsufficientInventoryError(sku, {"requested": qty, "available": available})

        await self.db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        currency = None
        for position, (sku, qty) in enumerate(quantities.items()):
            variant = variants[sku]
            currency = currency or variant.currency
            self.db.add(CartItem(
                cart_id=cart.id,
                position=position,
                sku=sku,
                title=variant.title,
                qty=qty,
                unit_price_cents=variant.price_cents,
            ))
        # Items changed, so any quoted discount amount is stale
        await self.db.execute(
            update(Cart)
            .where(Cart.id == cart.id)
            .values(currency=currency or cart.currency, discount_id=None, discount_code=None, discount_amount_cents=0)
        )
        await self.db.commit()
        return await self.get_cart(cart.id)

    async def apply_discount(self, cart_id: str, code: str) -> Cart:
        cart = await self._get_open_cart(cart_id)
        if not cart.items:
            raise InvalidRequestError("Cart has no items")

        discount = await self.discounts.get_by_code(self.store.id, code)
        subtotal = cart.subtotal_cents
        await self.discounts.validate(discount, subtotal, cart.customer_email)
        amount = calculate_discount(discount, subtotal)

        await self.db.execute(
            update(Cart)
            .where(Cart.id == cart.id)
            .values(discount_id=discount.id, discount_code=discount.code, discount_amount_cents=amount)
        )
        await self.db.commit()
        return await self.get_cart(cart.id)

    async def _release_holds(self, held: List[Tuple[str, int]]) -> None:
        for sku, qty in held:
            await self.ledger.release(sku, qty, log=False)

    async def _unclaim(self, cart_id: str) -> None:
        await self.db.execute(
            update(Cart)
            .where(Cart.id == cart_id, Cart.status == CartStatus.OPEN.value)
            .values(checked_out_at=None)
        )
        await self.db.commit()

    async def checkout(self, cart_id: str, success_url: str, cancel_url: str) -> Cart:
        if self.payment_client is None or not self.store.payment_secret_key:
            raise InvalidRequestError("Payment provider not connected for this store")

        cart = await self.get_cart(cart_id)
        if not cart.items:
            raise InvalidRequestError("Cart has no items")

        now = utcnow()
        claimed = await self.db.execute(
            update(Cart)
            .where(
                Cart.id == cart.id,
                Cart.status == CartStatus.OPEN.value,
                Cart.checked_out_at.is_(None),
            )
            .values(checked_out_at=now)
        )
        await self.db.commit()
        if claimed.rowcount == 0:
            await self.db.refresh(cart)
            raise ConflictError(f"Cart is not open for checkout (status: {cart.status})", {"status": cart.status})

        expires_at = as_utc(cart.expires_at)
        if expires_at is not None and expires_at < now:
            await self._unclaim(cart.id)
            raise ConflictError("Cart has expired", {"status": cart.status})

        line_items = [
            {"sku": item.sku, "title": item.title, "qty": item.qty, "unit_price_cents": item.unit_price_cents}
            for item in cart.items
        ]
        discount_id = cart.discount_id
        discount_amount = cart.discount_amount_cents or 0

        held: List[Tuple[str, int]] = []
        for item in line_items:
            if not await self.ledger.reserve(item["sku"], item["qty"]):
                await self._release_holds(held)
                await self._unclaim(cart.id)
                logger.info(f"Checkout of cart {cart.id} failed on {item['sku']}; released {len(held)} hold(s)")
                raise InsufficientInventoryError(item["sku"], {"requested": item["qty"]})
            held.append((item["sku"], item["qty"]))

        if discount_id:
            try:
                discount = await self.db.get(Discount, discount_id, populate_existing=True)
                if discount is None:
                    raise NotFoundError("Discount code not found")
                await self.discounts.validate(discount, sum(i["qty"] * i["unit_price_cents"] for i in line_items),
                                              cart.customer_email, now)
                await self.discounts.reserve_usage(discount_id, now)
            except (NotFoundError, DiscountInvalidError, DiscountLimitExhaustedError):
                await self._release_holds(held)
                await self._unclaim(cart.id)
                raise

        try:
            session: CheckoutSession = await self.payment_client.create_checkout_session(
                self.store.payment_secret_key,
                customer_email=cart.customer_email,
                line_items=line_items,
                currency=cart.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"cart_id": cart.id, "store_id": self.store.id},
                discount_amount_cents=discount_amount,
                discount_code=cart.discount_code,
            )
        except UpstreamPaymentError:
            await self._release_holds(held)
            if discount_id:
                await self.discounts.release_usage(discount_id)
            await self._unclaim(cart.id)
            logger.warning(f"Provider session creation failed for cart {cart.id}; holds released")
            raise

        await self.db.execute(
            update(Cart)
            .where(Cart.id == cart.id, Cart.status == CartStatus.OPEN.value)
            .values(
                status=CartStatus.CHECKED_OUT.value,
                checkout_session_id=session.id,
                checkout_url=session.url,
            )
        )
        await self.db.commit()
        logger.info(f"Cart {cart.id} checked out with session {session.id}")
        return await self.get_cart(cart.id)
