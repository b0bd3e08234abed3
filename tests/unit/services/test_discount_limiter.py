# tests/unit/services/test_discount_limiter.py
import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from merchant.core.enums import DiscountStatus, DiscountType
from merchant.core.exceptions import DiscountInvalidError, DiscountLimitExhaustedError, NotFoundError
from merchant.core.utils import utcnow
from merchant.models.discount import Discount, DiscountUsage
from merchant.services.discount_limiter import DiscountLimiter, calculate_discount


def _discount(**kwargs):
    defaults = dict(type=DiscountType.PERCENTAGE.value, value=10, max_discount_cents=None)
    defaults.update(kwargs)
    return MagicMock(spec=Discount, **defaults)


# --- calculate_discount ---

def test_percentage_discount_rounds_down():
    assert calculate_discount(_discount(value=15), 999) == 149


def test_percentage_discount_capped_by_max():
    assert calculate_discount(_discount(value=50, max_discount_cents=1000), 10000) == 1000


def test_fixed_discount_capped_at_subtotal():
    assert calculate_discount(_discount(type=DiscountType.FIXED_AMOUNT.value, value=5000), 3000) == 3000


# --- validate ---

async def test_get_by_code_normalizes_case(db_session, store, make_discount):
    await make_discount(code="SAVE10")
    discount = await DiscountLimiter(db_session).get_by_code(store.id, "  save10 ")
    assert discount.code == "SAVE10"


async def test_get_by_code_unknown(db_session, store):
    with pytest.raises(NotFoundError):
        await DiscountLimiter(db_session).get_by_code(store.id, "NOPE")


async def test_validate_rejects_inactive_and_out_of_window(db_session, store, make_discount):
    limiter = DiscountLimiter(db_session)
    inactive = await make_discount(code="OFF", status=DiscountStatus.INACTIVE.value)
    future = await make_discount(code="SOON", starts_at=utcnow() + timedelta(days=1))
    expired = await make_discount(code="GONE", expires_at=utcnow() - timedelta(days=1))

    for discount in (inactive, future, expired):
        with pytest.raises(DiscountInvalidError):
            await limiter.validate(discount, 5000, "buyer@example.com")


async def test_validate_enforces_minimum_purchase(db_session, store, make_discount):
    discount = await make_discount(min_purchase_cents=5000)
    with pytest.raises(DiscountInvalidError) as excinfo:
        await DiscountLimiter(db_session).validate(discount, 4999, "buyer@example.com")
    assert excinfo.value.details["min_purchase_cents"] == 5000


async def test_validate_enforces_per_customer_limit(db_session, store, make_discount):
    discount = await make_discount(usage_limit_per_customer=1)
    limiter = DiscountLimiter(db_session)
    await limiter.record_usage("order-1", discount.id, "Buyer@Example.com", 100)

    with pytest.raises(DiscountInvalidError):
        await limiter.validate(discount, 5000, "buyer@example.com")
    await limiter.validate(discount, 5000, "someone-else@example.com")


# --- reserve_usage ---

async def test_reserve_usage_stops_at_limit(db_session, store, make_discount):
    discount = await make_discount(usage_limit=2)
    limiter = DiscountLimiter(db_session)

    await limiter.reserve_usage(discount.id)
    await limiter.reserve_usage(discount.id)
    with pytest.raises(DiscountLimitExhaustedError):
        await limiter.reserve_usage(discount.id)

    await db_session.refresh(discount)
    assert discount.usage_count == 2


async def test_concurrent_usage_reservations_honor_limit(session_factory, db_session, store, make_discount):
    """usage_limit = K: exactly K of many concurrent reservations succeed."""
    discount = await make_discount(usage_limit=3)
    discount_id = discount.id

    async def attempt():
        async with session_factory() as session:
            try:
                await DiscountLimiter(session).reserve_usage(discount_id)
                return True
            except DiscountLimitExhaustedError:
                return False

    results = await asyncio.gather(*[attempt() for _ in range(8)])

    assert results.count(True) == 3
    await db_session.refresh(discount)
    assert discount.usage_count == 3


async def test_reserve_usage_rejects_expired_discount(db_session, store, make_discount):
    discount = await make_discount(expires_at=utcnow() - timedelta(minutes=1))
    with pytest.raises(DiscountLimitExhaustedError):
        await DiscountLimiter(db_session).reserve_usage(discount.id)


async def test_release_usage_is_floored_at_zero(db_session, store, make_discount):
    discount = await make_discount(usage_limit=5)
    limiter = DiscountLimiter(db_session)

    await limiter.reserve_usage(discount.id)
    await limiter.release_usage(discount.id)
    await limiter.release_usage(discount.id)

    await db_session.refresh(discount)
    assert discount.usage_count == 0


# --- record_usage ---

async def test_record_usage_is_idempotent_per_order(db_session, store, make_discount):
    discount = await make_discount()
    limiter = DiscountLimiter(db_session)

    assert await limiter.record_usage("order-1", discount.id, "buyer@example.com", 500) is True
    assert await limiter.record_usage("order-1", discount.id, "buyer@example.com", 500) is False

    count = await db_session.scalar(select(func.count(DiscountUsage.id)))
    assert count == 1
