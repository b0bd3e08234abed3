"""
Discount usage limiter.

validate() is an advisory pre-check for a quote. The cap itself is enforced by
reserve_usage(), a single conditional UPDATE that increments usage_count only
while the discount is active, inside its window and under usage_limit.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.enums import DiscountStatus, DiscountType
from merchant.core.exceptions import DiscountInvalidError, DiscountLimitExhaustedError, NotFoundError
from merchant.core.utils import as_utc, new_id, utcnow
from merchant.models.discount import Discount, DiscountUsage

logger = logging.getLogger(__name__)


def calculate_discount(discount: Discount, subtotal_cents: int) -> int:
    """Amount off in cents: percentage capped by max_discount_cents, fixed capped at subtotal."""
    if discount.type == DiscountType.PERCENTAGE.value:
        amount = subtotal_cents * discount.value // 100
        if discount.max_discount_cents is not None:
            amount = min(amount, discount.max_discount_cents)
    else:
        amount = discount.value
    return max(0, min(amount, subtotal_cents))


class DiscountLimiter:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_code(self, store_id: str, code: str) -> Discount:
        normalized = code.strip().upper()
        discount = await self.db.scalar(
            select(Discount).where(Discount.store_id == store_id, Discount.code == normalized)
        )
        if discount is None:
            raise NotFoundError("Discount code not found")
        return discount

    async def customer_usage_count(self, discount_id: str, customer_email: str) -> int:
        count = await self.db.scalar(
            select(func.count(DiscountUsage.id)).where(
                DiscountUsage.discount_id == discount_id,
                DiscountUsage.customer_email == customer_email.lower(),
            )
        )
        return count or 0

    async def validate(
        self,
        discount: Discount,
        subtotal_cents: int,
        customer_email: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise DiscountInvalidError if the discount cannot be applied to this purchase."""
        now = now or utcnow()

        if discount.status != DiscountStatus.ACTIVE.value:
            raise DiscountInvalidError("Discount is not active")
        starts_at = as_utc(discount.starts_at)
        expires_at = as_utc(discount.expires_at)
        if starts_at is not None and now < starts_at:
            raise DiscountInvalidError("Discount is not yet active")
        if expires_at is not None and now > expires_at:
            raise DiscountInvalidError("Discount has expired")
        if subtotal_cents < (discount.min_purchase_cents or 0):
            raise DiscountInvalidError(
                f"Minimum purchase of {discount.min_purchase_cents} cents required",
                {"min_purchase_cents": discount.min_purchase_cents},
            )
        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            raise DiscountLimitExhaustedError("Discount usage limit reached")
        if discount.usage_limit_per_customer is not None:
            used = await self.customer_usage_count(discount.id, customer_email)
            if used >= discount.usage_limit_per_customer:
                raise DiscountInvalidError("You have already used this discount")

    async def reserve_usage(self, discount_id: str, now: Optional[datetime] = None) -> None:
        """
        Atomically take one use of the discount.

        Zero rows affected means the limit is exhausted (or the discount left
        its active window) and the whole order attempt must fail.
        """
        now = now or utcnow()
        result = await self.db.execute(
            update(Discount)
            .where(
                Discount.id == discount_id,
                Discount.status == DiscountStatus.ACTIVE.value,
                or_(Discount.starts_at.is_(None), Discount.starts_at <= now),
                or_(Discount.expires_at.is_(None), Discount.expires_at >= now),
                or_(Discount.usage_limit.is_(None), Discount.usage_count < Discount.usage_limit),
            )
            .values(usage_count=Discount.usage_count + 1, updated_at=now)
        )
        await self.db.commit()
        if result.rowcount == 0:
            logger.info(f"Usage reservation rejected for discount {discount_id}")
            raise DiscountLimitExhaustedError("Discount usage limit reached or discount no longer valid")

    async def release_usage(self, discount_id: str) -> None:
        """Give back a use taken at checkout, floored at zero."""
        await self.db.execute(
            update(Discount)
            .where(Discount.id == discount_id)
            .values(
                usage_count=case((Discount.usage_count > 0, Discount.usage_count - 1), else_=0),
                updated_at=utcnow(),
            )
        )
        await self.db.commit()

    async def record_usage(
        self,
        order_id: str,
        discount_id: str,
        customer_email: str,
        amount_cents: int,
    ) -> bool:
        """
        Insert the (order, discount) usage record.

        Returns False when the record already exists: a retried ingestion hit
        the uniqueness guard, which counts as success.
        """
        try:
            await self.db.execute(
                insert(DiscountUsage).values(
                    id=new_id(),
                    discount_id=discount_id,
                    order_id=order_id,
                    customer_email=customer_email.lower(),
                    discount_amount_cents=amount_cents,
                    created_at=utcnow(),
                )
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Discount usage for order {order_id} already recorded")
            return False
        return True
