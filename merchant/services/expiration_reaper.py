"""
Expiration reaper.

Two independent sweeps, both safe to overlap with themselves, with checkouts
in flight and with payment ingestion. Each cart is claimed with a conditional
status update before anything is released, so only one sweep run ever
releases a given cart's holds.

1. Open carts past expires_at are marked expired. Holds are only taken at
   checkout, so an open cart has nothing to release.
2. Checked-out carts whose checkout started more than the grace period ago
   and that no order references (abandoned provider session) release their
   holds and the discount use taken at checkout, then become expired.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from merchant.core.config import get_settings
from merchant.core.enums import CartStatus
from merchant.core.utils import utcnow
from merchant.models.cart import Cart
from merchant.models.order import Order
from merchant.services.discount_limiter import DiscountLimiter
from merchant.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)


def _has_order():
    return exists().where(
        Order.store_id == Cart.store_id,
        Order.checkout_session_id == Cart.checkout_session_id,
    )


class ExpirationReaper:

    def __init__(self, session_factory: async_sessionmaker, grace_period: Optional[timedelta] = None):
        self.session_factory = session_factory
        if grace_period is None:
            grace_period = timedelta(minutes=get_settings().CHECKOUT_GRACE_PERIOD_MINUTES)
        self.grace_period = grace_period

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        expired_open = await self.expire_open_carts(now)
        released = await self.release_abandoned_checkouts(now)
        if expired_open or released:
            logger.info(f"Reaper: expired {expired_open} open cart(s), released {released} abandoned checkout(s)")
        return {"expired_open": expired_open, "released_abandoned": released}

    async def expire_open_carts(self, now: datetime) -> int:
        cutoff = now - self.grace_period
        async with self.session_factory() as db:
            result = await db.execute(
                select(Cart).where(
                    Cart.status == CartStatus.OPEN.value,
                    Cart.expires_at < now,
                    or_(Cart.checked_out_at.is_(None), Cart.checked_out_at < cutoff),
                )
            )
            candidates = [
                (cart.id, cart.checked_out_at, [(item.sku, item.qty) for item in cart.items])
                for cart in result.scalars().all()
            ]

            expired = 0
            for cart_id, checked_out_at, items in candidates:
                claimed = await db.execute(
                    update(Cart)
                    .where(Cart.id == cart_id, Cart.status == CartStatus.OPEN.value)
                    .where(or_(Cart.checked_out_at.is_(None), Cart.checked_out_at < cutoff))
                    .values(status=CartStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if claimed.rowcount == 1:
                    expired += 1
                    if checked_out_at is not None:
                        held = ", ".join(f"{qty} x {sku}" for sku, qty in items) or "no items"
                        logger.warning(f"Cart {cart_id} expired with an unfinished checkout; holds need review: {held}")
            return expired

    async def release_abandoned_checkouts(self, now: datetime) -> int:
        cutoff = now - self.grace_period
        abandoned = and_(
            Cart.status == CartStatus.CHECKED_OUT.value,
            Cart.checked_out_at < cutoff,
            Cart.checkout_session_id.is_not(None),
            ~_has_order(),
        )
        async with self.session_factory() as db:
            carts = (await db.execute(select(Cart).where(abandoned))).scalars().all()
            work = [
                (cart.id, cart.store_id, cart.discount_id, [(item.sku, item.qty) for item in cart.items])
                for cart in carts
            ]

            released = 0
            for cart_id, store_id, discount_id, items in work:
                claimed = await db.execute(
                    update(Cart)
                    .where(Cart.id == cart_id)
                    .where(abandoned)
                    .values(status=CartStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if claimed.rowcount == 0:
                    continue  # finalized or claimed by an overlapping run

                ledger = InventoryLedger(db, store_id)
                for sku, qty in items:
                    await ledger.release(sku, qty)
                if discount_id:
                    await DiscountLimiter(db).release_usage(discount_id)
                released += 1
                logger.info(f"Released abandoned checkout for cart {cart_id} ({len(items)} item(s))")
            return released
