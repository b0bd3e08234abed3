"""
Idempotent ingestion of payment-provider events.

Provider webhooks are delivered at least once, so every step below is safe to
re-run. The dedup ledger (payment_events.external_id) is the outer boundary;
unique keys on order-linked rows are the inner one:

- orders (store_id, checkout_session_id)   one order per checkout session
- inventory_logs (order_id, sku, reason)   one sale deduction per order line
- discount_usage (order_id, discount_id)   one usage record per order

A constraint violation on any of these inserts means an earlier (or
concurrent) run already did the work, and is treated as success.

The dedup row is written last, so a crash part-way through leaves the event
unrecorded and the provider's redelivery finishes the job.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.enums import CartStatus, OrderStatus, WebhookEventType
from merchant.core.exceptions import DiscountLimitExhaustedError, InvalidRequestError
from merchant.core.utils import generate_order_number, new_id, utcnow
from merchant.models.cart import Cart
from merchant.models.customer import Customer, CustomerAddress
from merchant.models.order import Order, OrderItem
from merchant.models.payment_event import PaymentEvent
from merchant.models.store import Store
from merchant.schemas.order import OrderRead
from merchant.services.discount_limiter import DiscountLimiter
from merchant.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
ORDER_NUMBER_ATTEMPTS = 5


@dataclass
class IngestionResult:
    status: str  # "deduped", "applied" or "ignored"
    order_id: Optional[str] = None
    order_created: bool = False


class PaymentEventIngestor:
    """
    Applies verified provider events for one store.

    A rollback on an idempotency guard expires every loaded ORM instance, so
    the steps work from plain snapshots and reload the order explicitly.
    """

    def __init__(self, db: AsyncSession, store: Store, dispatcher=None):
        self.db = db
        self.store_id = store.id
        self.low_stock_threshold = store.low_stock_threshold
        self.dispatcher = dispatcher
        self.ledger = InventoryLedger(db, store.id)
        self.discounts = DiscountLimiter(db)

    async def is_processed(self, external_id: str) -> bool:
        existing = await self.db.scalar(
            select(PaymentEvent.id).where(PaymentEvent.external_id == external_id)
        )
        return existing is not None

    async def _record_event(self, event: Dict[str, Any]) -> bool:
        """Write the dedup row. False if another delivery got there first."""
        try:
            await self.db.execute(
                insert(PaymentEvent).values(
                    id=new_id(),
                    store_id=self.store_id,
                    external_id=event["id"],
                    type=event["type"],
                    payload=event,
                    processed_at=utcnow(),
                )
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Payment event {event['id']} recorded concurrently")
            return False
        return True

    async def ingest(self, event: Dict[str, Any]) -> IngestionResult:
        external_id = event.get("id")
        event_type = event.get("type")
        if not external_id or not event_type:
            raise InvalidRequestError("Event envelope is missing id or type")

        # 1. dedup
        if await self.is_processed(external_id):
            logger.info(f"Payment event {external_id} already processed")
            return IngestionResult(status="deduped")

        if event_type != CHECKOUT_COMPLETED:
            await self._record_event(event)
            logger.info(f"Recorded payment event {external_id} ({event_type}) without action")
            return IngestionResult(status="ignored")

        session = (event.get("data") or {}).get("object") or {}
        session_id = session.get("id")
        if not session_id:
            raise InvalidRequestError("checkout.session.completed event has no session id")

        # 2. originating cart
        cart = await self._find_cart(session)
        if cart is None:
            logger.warning(f"No cart for checkout session {session_id} (event {external_id}); ignoring")
            await self._record_event(event)
            return IngestionResult(status="ignored")
        snapshot = _snapshot_cart(cart)

        # 3 + 4. customer upsert and order insert
        order_id, order_number, created = await self._create_order(snapshot, session)

        # 5. permanent deductions
        for item in snapshot["items"]:
            committed = await self.ledger.commit_sale(item["sku"], item["qty"], order_id=order_id)
            if not committed:
                logger.error(f"Order {order_number}: sale of {item['qty']} x {item['sku']} could not be committed")
                continue
            await self._check_low_stock(item["sku"])

        # 6. discount usage
        order = await self._find_order(session_id)
        if order.discount_id:
            discount_id, discount_code = order.discount_id, order.discount_code
            recorded = await self.discounts.record_usage(
                order.id, discount_id, order.customer_email, order.discount_amount_cents or 0
            )
            if recorded and snapshot["status"] == CartStatus.EXPIRED.value:
                # The reaper gave the checkout-time use back; take it again.
                try:
                    await self.discounts.reserve_usage(discount_id)
                except DiscountLimitExhaustedError:
                    logger.warning(f"Order {order_number} used discount {discount_code} after its limit was reached")

        # 7. dedup ledger, last
        inserted = await self._record_event(event)

        # 8. business event
        if inserted and self.dispatcher is not None:
            try:
                order = await self._find_order(session_id)
                await self.dispatcher.dispatch(
                    self.db, self.store_id, WebhookEventType.ORDER_CREATED,
                    OrderRead.from_order(order).model_dump(mode="json"),
                )
            except Exception:
                logger.exception(f"Failed to dispatch order.created for order {order_id}")

        logger.info(f"Applied payment event {external_id} -> order {order_number} (new={created})")
        return IngestionResult(status="applied", order_id=order_id, order_created=created)

    async def _find_cart(self, session: Dict[str, Any]) -> Optional[Cart]:
        cart = await self.db.scalar(
            select(Cart).where(Cart.store_id == self.store_id, Cart.checkout_session_id == session["id"])
            .execution_options(populate_existing=True)
        )
        if cart is None:
            cart_id = (session.get("metadata") or {}).get("cart_id")
            if cart_id:
                cart = await self.db.scalar(
                    select(Cart).where(Cart.store_id == self.store_id, Cart.id == cart_id)
                    .execution_options(populate_existing=True)
                )
        return cart

    async def _find_order(self, session_id: str) -> Optional[Order]:
        return await self.db.scalar(
            select(Order)
            .where(Order.store_id == self.store_id, Order.checkout_session_id == session_id)
            .execution_options(populate_existing=True)
        )

    async def _get_or_create_customer(self, email: str) -> str:
        """Customer id for (store, email), inserting the row on first order."""
        lookup = select(Customer.id).where(Customer.store_id == self.store_id, Customer.email == email)
        customer_id = await self.db.scalar(lookup)
        if customer_id is not None:
            return customer_id
        try:
            await self.db.execute(
                insert(Customer).values(
                    id=new_id(), store_id=self.store_id, email=email,
                    order_count=0, total_spent_cents=0,
                    created_at=utcnow(), updated_at=utcnow(),
                )
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
        return await self.db.scalar(lookup)

    async def _create_order(self, cart: Dict[str, Any], session: Dict[str, Any]) -> Tuple[str, str, bool]:
        """Return (order_id, number, created). Reuses the order already linked to the session."""
        session_id = session["id"]
        existing = await self._find_order(session_id)
        if existing is not None:
            logger.info(f"Order {existing.number} already exists for session {session_id}")
            return existing.id, existing.number, False

        details = session.get("customer_details") or {}
        shipping = session.get("shipping_details") or session.get("shipping") or {}
        totals = session.get("total_details") or {}

        email = (details.get("email") or cart["customer_email"]).strip().lower()
        name = shipping.get("name") or details.get("name")
        phone = details.get("phone")
        address = shipping.get("address") or details.get("address")

        subtotal = sum(item["qty"] * item["unit_price_cents"] for item in cart["items"])
        discount_amount = cart["discount_amount_cents"]
        tax = totals.get("amount_tax") or 0
        shipping_cost = totals.get("amount_shipping") or 0
        total = subtotal - discount_amount + tax + shipping_cost

        customer_id = await self._get_or_create_customer(email)

        for _ in range(ORDER_NUMBER_ATTEMPTS):
            now = utcnow()
            order_id = new_id()
            number = generate_order_number(now)
            self.db.add(Order(
                id=order_id,
                store_id=self.store_id,
                customer_id=customer_id,
                number=number,
                status=OrderStatus.PAID.value,
                customer_email=email,
                shipping_name=name,
                shipping_phone=phone,
                ship_to=address,
                subtotal_cents=subtotal,
                discount_amount_cents=discount_amount,
                tax_cents=tax,
                shipping_cents=shipping_cost,
                total_cents=total,
                currency=cart["currency"],
                discount_id=cart["discount_id"],
                discount_code=cart["discount_code"],
                checkout_session_id=session_id,
                payment_intent_id=session.get("payment_intent"),
                created_at=now,
                items=[OrderItem(**item) for item in cart["items"]],
            ))
            stats = {
                "order_count": Customer.order_count + 1,
                "total_spent_cents": Customer.total_spent_cents + total,
                "last_order_at": now,
                "updated_at": now,
            }
            if name:
                stats["name"] = name
            if phone:
                stats["phone"] = phone
            try:
                await self.db.flush()
                await self.db.execute(update(Customer).where(Customer.id == customer_id).values(**stats))
                if address:
                    known = await self._known_addresses(customer_id)
                    if _address_key(address) not in known:
                        await self.db.execute(
                            insert(CustomerAddress).values(
                                **_address_values(customer_id, name, address, is_default=not known)
                            )
                        )
                await self.db.commit()
                return order_id, number, True
            except IntegrityError:
                await self.db.rollback()
                existing = await self._find_order(session_id)
                if existing is not None:
                    logger.info(f"Order for session {session_id} inserted concurrently")
                    return existing.id, existing.number, False
                logger.info(f"Order number {number} collided; regenerating")

        raise RuntimeError(f"Could not allocate a unique order number for session {session_id}")

    async def _known_addresses(self, customer_id: str) -> Set[Tuple[str, str]]:
        """Stored (line1, postal_code) pairs; a new pair means a new address."""
        result = await self.db.execute(
            select(CustomerAddress.line1, CustomerAddress.postal_code).where(CustomerAddress.customer_id == customer_id)
        )
        return {(line1, postal_code) for line1, postal_code in result.all()}

    async def _check_low_stock(self, sku: str) -> None:
        if self.dispatcher is None:
            return
        try:
            level = await self.ledger.get_level(sku)
            await self.dispatcher.notify_low_inventory(
                self.db, self.store_id, sku, level.available, self.low_stock_threshold
            )
        except Exception:
            logger.exception(f"Low-stock check failed for {self.store_id}/{sku}")


def _snapshot_cart(cart: Cart) -> Dict[str, Any]:
    return {
        "id": cart.id,
        "status": cart.status,
        "customer_email": cart.customer_email,
        "currency": cart.currency,
        "discount_id": cart.discount_id,
        "discount_code": cart.discount_code,
        "discount_amount_cents": cart.discount_amount_cents or 0,
        "items": [
            {
                "position": item.position,
                "sku": item.sku,
                "title": item.title,
                "qty": item.qty,
                "unit_price_cents": item.unit_price_cents,
            }
            for item in cart.items
        ],
    }


def _address_key(address: Dict[str, Any]) -> Tuple[str, str]:
    return address.get("line1") or "", address.get("postal_code") or ""


def _address_values(
    customer_id: str, name: Optional[str], address: Dict[str, Any], is_default: bool
) -> Dict[str, Any]:
    return dict(
        id=new_id(),
        customer_id=customer_id,
        is_default=is_default,
        name=name,
        line1=address.get("line1") or "",
        line2=address.get("line2"),
        city=address.get("city") or "",
        state=address.get("state"),
        postal_code=address.get("postal_code") or "",
        country=address.get("country") or "US",
        created_at=utcnow(),
    )
