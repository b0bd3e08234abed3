"""
Inventory ledger.

Every mutation of the (on_hand, reserved) counters is a single conditional
UPDATE whose WHERE clause carries the invariant check, so concurrent requests
never read-modify-write a row. `rowcount` tells the caller whether the
mutation applied:

- adjust:      on_hand += delta           WHERE on_hand + delta >= reserved
- reserve:     reserved += qty            WHERE on_hand - reserved >= qty
- release:     reserved -= qty, floored at 0
- commit_sale: on_hand -= qty, reserved -= qty  WHERE reserved >= qty

Each method commits its own unit of work; callers never hold a transaction
open across several ledger rows.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import case, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.enums import InventoryReason
from merchant.core.exceptions import InvalidRequestError, InvalidStateError, NotFoundError
from merchant.core.utils import new_id, utcnow
from merchant.models.inventory import InventoryLevel, InventoryLog

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Per-tenant stock counters for one store."""

    def __init__(self, db: AsyncSession, store_id: str):
        self.db = db
        self.store_id = store_id

    def _row(self, sku: str):
        return (
            InventoryLevel.store_id == self.store_id,
            InventoryLevel.sku == sku,
        )

    def _log_values(self, sku: str, delta: int, reason: InventoryReason, order_id: Optional[str] = None):
        return dict(
            id=new_id(),
            store_id=self.store_id,
            sku=sku,
            delta=delta,
            reason=reason.value,
            order_id=order_id,
            created_at=utcnow(),
        )

    async def get_level(self, sku: str) -> InventoryLevel:
        level = await self.db.scalar(select(InventoryLevel).where(*self._row(sku)))
        if level is None:
            raise NotFoundError(f"SKU not found: {sku}")
        await self.db.refresh(level)
        return level

    async def list_levels(
        self,
        low_stock_threshold: Optional[int] = None,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[InventoryLevel], Optional[str]]:
        """Cursor-paginated by SKU. Returns (levels, next_cursor)."""
        stmt = select(InventoryLevel).where(InventoryLevel.store_id == self.store_id)
        if low_stock_threshold is not None:
            stmt = stmt.where(InventoryLevel.on_hand - InventoryLevel.reserved <= low_stock_threshold)
        if cursor:
            stmt = stmt.where(InventoryLevel.sku > cursor)
        stmt = stmt.order_by(InventoryLevel.sku).limit(limit + 1)

        levels = list((await self.db.execute(stmt)).scalars().all())
        has_more = len(levels) > limit
        if has_more:
            levels = levels[:limit]
        next_cursor = levels[-1].sku if has_more and levels else None
        return levels, next_cursor

    async def adjust(self, sku: str, delta: int, reason: InventoryReason) -> InventoryLevel:
        """
        Unconditional delta to on_hand, paired with a log entry.

        Rejected with InvalidStateError if it would drive on_hand below zero
        or below the units currently reserved.
        """
        reason = InventoryReason(reason)
        if reason not in InventoryReason.adjustable():
            raise InvalidRequestError("reason must be restock, correction, damaged, or return")
        if delta == 0:
            raise InvalidRequestError("delta must be non-zero")

        result = await self.db.execute(
            update(InventoryLevel)
            .where(*self._row(sku))
            .where(InventoryLevel.on_hand + delta >= InventoryLevel.reserved)
            .values(on_hand=InventoryLevel.on_hand + delta, updated_at=utcnow())
        )
        if result.rowcount == 0:
            await self.db.rollback()
            level = await self.get_level(sku)  # raises NotFoundError
            raise InvalidStateError(
                f"Cannot reduce inventory below reserved units. "
                f"Current on_hand: {level.on_hand}, reserved: {level.reserved}",
                {"sku": sku, "on_hand": level.on_hand, "reserved": level.reserved, "delta": delta},
            )

        await self.db.execute(insert(InventoryLog).values(**self._log_values(sku, delta, reason)))
        await self.db.commit()
        logger.info(f"Adjusted {self.store_id}/{sku} by {delta:+d} ({reason.value})")
        return await self.get_level(sku)

    async def reserve(self, sku: str, qty: int) -> bool:
        """Hold qty units if, at the moment of the write, at least qty are available."""
        if qty < 1:
            raise InvalidRequestError("qty must be positive")
        result = await self.db.execute(
            update(InventoryLevel)
            .where(*self._row(sku))
            .where(InventoryLevel.on_hand - InventoryLevel.reserved >= qty)
            .values(reserved=InventoryLevel.reserved + qty, updated_at=utcnow())
        )
        await self.db.commit()
        reserved = result.rowcount == 1
        if not reserved:
            logger.info(f"Reservation of {qty} x {self.store_id}/{sku} rejected: insufficient available")
        return reserved

    async def release(self, sku: str, qty: int, log: bool = True) -> bool:
        """
        Return held units to the available pool. Floored at zero so a double
        release can never push reserved negative.

        Compensating rollbacks inside a checkout pass log=False; expirations log
        a `release` entry.
        """
        remaining = InventoryLevel.reserved - qty
        result = await self.db.execute(
            update(InventoryLevel)
            .where(*self._row(sku))
            .values(
                reserved=case((remaining < 0, 0), else_=remaining),
                updated_at=utcnow(),
            )
        )
        if result.rowcount == 1 and log:
            await self.db.execute(
                insert(InventoryLog).values(**self._log_values(sku, -qty, InventoryReason.RELEASE))
            )
        await self.db.commit()
        return result.rowcount == 1

    async def commit_sale(self, sku: str, qty: int, order_id: Optional[str] = None) -> bool:
        """
        Convert a held reservation into a permanent deduction and log a `sale`.

        With an order_id the sale log row is unique per (order, sku), so a
        re-run for the same order line is a no-op that reports success.

        If the hold is gone (released by the reaper before payment arrived) the
        sale is taken from available stock instead. Returns False only when
        neither path can be applied without breaking the ledger invariant.
        """
        try:
            await self.db.execute(
                insert(InventoryLog).values(**self._log_values(sku, -qty, InventoryReason.SALE, order_id))
            )
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Sale of {sku} for order {order_id} already committed")
            return True

        result = await self.db.execute(
            update(InventoryLevel)
            .where(*self._row(sku))
            .where(InventoryLevel.reserved >= qty)
            .where(InventoryLevel.on_hand >= qty)
            .values(
                on_hand=InventoryLevel.on_hand - qty,
                reserved=InventoryLevel.reserved - qty,
                updated_at=utcnow(),
            )
        )
        if result.rowcount == 0:
            logger.warning(f"No reservation held for {qty} x {self.store_id}/{sku}; deducting from available")
            result = await self.db.execute(
                update(InventoryLevel)
                .where(*self._row(sku))
                .where(InventoryLevel.on_hand - InventoryLevel.reserved >= qty)
                .values(on_hand=InventoryLevel.on_hand - qty, updated_at=utcnow())
            )
        if result.rowcount == 0:
            await self.db.rollback()
            logger.error(f"Unable to commit sale of {qty} x {self.store_id}/{sku} (order {order_id})")
            return False

        await self.db.commit()
        return True
