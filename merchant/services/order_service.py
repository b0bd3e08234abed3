import logging
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.enums import ORDER_TRANSITIONS, OrderStatus, WebhookEventType
from merchant.core.exceptions import ConflictError, InvalidRequestError, NotFoundError
from merchant.core.utils import utcnow
from merchant.models.order import Order, Refund
from merchant.models.store import Store
from merchant.schemas.order import OrderRead

logger = logging.getLogger(__name__)

REFUNDABLE = {OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}


class OrderService:
    """Order reads, status/tracking updates and refunds for one store."""

    def __init__(self, db: AsyncSession, store: Store, dispatcher=None, payment_client=None):
        self.db = db
        self.store = store
        self.dispatcher = dispatcher
        self.payment_client = payment_client

    async def get_order(self, order_id: str) -> Order:
        order = await self.db.scalar(
            select(Order)
            .where(Order.id == order_id, Order.store_id == self.store.id)
            .execution_options(populate_existing=True)
        )
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], bool]:
        """Newest first. Returns (orders, has_more)."""
        stmt = select(Order).where(Order.store_id == self.store.id)
        if status is not None:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id).offset(offset).limit(limit + 1)
        orders = list((await self.db.execute(stmt)).scalars().all())
        return orders[:limit], len(orders) > limit

    async def _emit(self, event_type: WebhookEventType, order: Order) -> None:
        if self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch(
                self.db, self.store.id, event_type, OrderRead.from_order(order).model_dump(mode="json")
            )
        except Exception:
            logger.exception(f"Failed to dispatch {event_type.value} for order {order.id}")

    async def update_order(
        self,
        order_id: str,
        status: Optional[OrderStatus] = None,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
    ) -> Order:
        """
        Apply a status move and/or tracking details.

        The status write is conditional on the status we validated against, so
        two concurrent moves from the same state cannot both succeed.
        """
        order = await self.get_order(order_id)
        current = OrderStatus(order.status)
        values = {}

        new_status = OrderStatus(status) if status is not None else None
        if new_status is not None and new_status != current:
            if new_status not in ORDER_TRANSITIONS[current]:
                raise ConflictError(
                    f"Cannot change order status from {current.value} to {new_status.value}",
                    {"from": current.value, "to": new_status.value},
                )
            values["status"] = new_status.value
            if new_status == OrderStatus.SHIPPED and order.shipped_at is None:
                values["shipped_at"] = utcnow()
        else:
            new_status = None

        if tracking_number is not None and tracking_number != order.tracking_number:
            values["tracking_number"] = tracking_number
        if tracking_url is not None and tracking_url != order.tracking_url:
            values["tracking_url"] = tracking_url

        if not values:
            return order

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current.value)
            .values(**values)
        )
        await self.db.commit()
        if result.rowcount == 0:
            raise ConflictError("Order was modified concurrently; reload and retry")

        order = await self.get_order(order.id)
        logger.info(f"Order {order.number} updated: {', '.join(sorted(values))}")
        if new_status == OrderStatus.SHIPPED:
            await self._emit(WebhookEventType.ORDER_SHIPPED, order)
        else:
            await self._emit(WebhookEventType.ORDER_UPDATED, order)
        return order

    async def refund_order(self, order_id: str, amount_cents: Optional[int] = None) -> Refund:
        """
        Refund through the payment provider. A refund of the remaining balance
        moves the order to refunded and emits order.refunded.
        """
        order = await self.get_order(order_id)
        current = OrderStatus(order.status)
        if current == OrderStatus.REFUNDED:
            raise ConflictError("Order has already been refunded")
        if current not in REFUNDABLE:
            raise ConflictError(f"Cannot refund an order with status {current.value}")
        if not order.payment_intent_id:
            raise InvalidRequestError("Order has no captured payment to refund")
        if self.payment_client is None or not self.store.payment_secret_key:
            raise InvalidRequestError("Payment provider not connected for this store")

        already_refunded = sum(refund.amount_cents for refund in order.refunds)
        remaining = order.total_cents - already_refunded
        amount = amount_cents if amount_cents is not None else remaining
        if amount < 1 or amount > remaining:
            raise InvalidRequestError(
                f"Refund amount must be between 1 and {remaining} cents",
                {"remaining_cents": remaining},
            )

        response = await self.payment_client.create_refund(
            self.store.payment_secret_key,
            payment_intent_id=order.payment_intent_id,
            amount_cents=amount,
        )
        refund = Refund(
            order_id=order.id,
            provider_refund_id=response.get("id", ""),
            amount_cents=response.get("amount", amount),
            status=response.get("status", "pending"),
        )
        self.db.add(refund)

        fully_refunded = amount == remaining
        if fully_refunded:
            await self.db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == current.value)
                .values(status=OrderStatus.REFUNDED.value)
            )
        await self.db.commit()
        logger.info(f"Refunded {amount} cents on order {order.number} (full={fully_refunded})")

        order = await self.get_order(order.id)
        if fully_refunded:
            await self._emit(WebhookEventType.ORDER_REFUNDED, order)
        else:
            await self._emit(WebhookEventType.ORDER_UPDATED, order)
        return refund
