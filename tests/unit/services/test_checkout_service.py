# tests/unit/services/test_checkout_service.py
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from merchant.core.enums import CartStatus, DiscountType
from merchant.core.exceptions import (
    ConflictError,
    DiscountLimitExhaustedError,
    InsufficientInventoryError,
    InvalidRequestError,
    NotFoundError,
    UpstreamPaymentError,
)
from merchant.core.utils import utcnow
from merchant.models.cart import Cart
from merchant.models.store import Store
from merchant.services.checkout_service import CartService
from merchant.services.inventory_ledger import InventoryLedger

SUCCESS_URL = "https://shop.example.com/thanks"
CANCEL_URL = "https://shop.example.com/cart"


@pytest.fixture
def service(db_session, store, payment_client):
    return CartService(db_session, store, payment_client)


async def _cart_with(service, items):
    cart = await service.create_cart("buyer@example.com")
    return await service.set_items(cart.id, items)


async def _counters(db, store, sku):
    level = await InventoryLedger(db, store.id).get_level(sku)
    return level.on_hand, level.reserved


# --- cart building ---

async def test_create_cart_requires_valid_email(service):
    with pytest.raises(InvalidRequestError):
        await service.create_cart("not-an-email")


async def test_create_cart_sets_expiry(service):
    cart = await service.create_cart("Buyer@Example.com")
    assert cart.status == CartStatus.OPEN.value
    assert cart.customer_email == "buyer@example.com"
    assert cart.expires_at is not None


async def test_set_items_snapshots_catalog_prices(service, make_sku):
    await make_sku("A", on_hand=5, price_cents=1250)
    await make_sku("B", on_hand=5, price_cents=500)

    cart = await _cart_with(service, [("A", 2), ("B", 1)])

    assert [(item.sku, item.qty, item.unit_price_cents) for item in cart.items] == [("A", 2, 1250), ("B", 1, 500)]
    assert cart.subtotal_cents == 3000


async def test_set_items_rejects_unknown_draft_and_unavailable(service, make_sku):
    await make_sku("A", on_hand=1)
    await make_sku("DRAFT", on_hand=5, status="draft")
    cart = await service.create_cart("buyer@example.com")

    with pytest.raises(NotFoundError):
        await service.set_items(cart.id, [("MISSING", 1)])
    with pytest.raises(InvalidRequestError):
        await service.set_items(cart.id, [("DRAFT", 1)])
    with pytest.raises(InsufficientInventoryError):
        await service.set_items(cart.id, [("A", 2)])


async def test_set_items_holds_nothing(service, db_session, store, make_sku):
    await make_sku("A", on_hand=2)
    await _cart_with(service, [("A", 2)])
    assert await _counters(db_session, store, "A") == (2, 0)


async def test_apply_discount_quotes_amount(service, make_sku, make_discount):
    await make_sku("A", on_hand=5, price_cents=2000)
    await make_discount(code="SAVE10", type=DiscountType.PERCENTAGE, value=10)
    cart = await _cart_with(service, [("A", 2)])

    cart = await service.apply_discount(cart.id, "save10")

    assert cart.discount_code == "SAVE10"
    assert cart.discount_amount_cents == 400


# --- checkout reservation sequence ---

async def test_checkout_reserves_and_links_session(service, db_session, store, make_sku, payment_provider):
    await make_sku("A", on_hand=2)
    cart = await _cart_with(service, [("A", 2)])

    cart = await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)

    assert cart.status == CartStatus.CHECKED_OUT.value
    assert cart.checkout_session_id == "cs_test_1"
    assert cart.checkout_url.endswith("cs_test_1")
    assert await _counters(db_session, store, "A") == (2, 2)
    assert payment_provider.session_count == 1


async def test_second_checkout_for_same_stock_fails(service, db_session, store, make_sku):
    await make_sku("A", on_hand=2)
    first = await _cart_with(service, [("A", 2)])
    # Priced while both units were still free
    second = await _cart_with(service, [("A", 1)])

    await service.checkout(first.id, SUCCESS_URL, CANCEL_URL)

    with pytest.raises(InsufficientInventoryError):
        await service.checkout(second.id, SUCCESS_URL, CANCEL_URL)
    assert await _counters(db_session, store, "A") == (2, 2)


async def test_failed_checkout_leaves_no_partial_holds(service, db_session, store, make_sku):
    await make_sku("A", on_hand=5)
    await make_sku("B", on_hand=5)
    await make_sku("C", on_hand=1)
    cart = await _cart_with(service, [("A", 2), ("B", 3), ("C", 1)])
    # Someone else takes the last C between pricing and checkout
    assert await InventoryLedger(db_session, store.id).reserve("C", 1)

    with pytest.raises(InsufficientInventoryError) as excinfo:
        await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)

    assert excinfo.value.sku == "C"
    assert await _counters(db_session, store, "A") == (5, 0)
    assert await _counters(db_session, store, "B") == (5, 0)
    assert await _counters(db_session, store, "C") == (1, 1)
    cart = await service.get_cart(cart.id)
    assert cart.status == CartStatus.OPEN.value
    assert cart.checked_out_at is None


async def test_checkout_of_non_open_cart_conflicts(service, make_sku):
    await make_sku("A", on_hand=5)
    cart = await _cart_with(service, [("A", 1)])
    await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)

    with pytest.raises(ConflictError):
        await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)


async def test_concurrent_checkouts_of_same_cart_reserve_once(session_factory, db_session, store, make_sku,
                                                              payment_client):
    await make_sku("A", on_hand=10)
    cart = await _cart_with(CartService(db_session, store, payment_client), [("A", 3)])
    store_id = store.id

    async def attempt():
        async with session_factory() as session:
            tenant = await session.get(Store, store_id)
            try:
                await CartService(session, tenant, payment_client).checkout(cart.id, SUCCESS_URL, CANCEL_URL)
                return "ok"
            except ConflictError:
                return "conflict"

    results = await asyncio.gather(*[attempt() for _ in range(4)])

    assert results.count("ok") == 1
    assert await _counters(db_session, store, "A") == (10, 3)


async def test_provider_failure_rolls_back_holds_and_discount(service, db_session, store, make_sku, make_discount,
                                                              payment_provider):
    await make_sku("A", on_hand=5, price_cents=2000)
    discount = await make_discount(code="SAVE10", usage_limit=10)
    cart = await _cart_with(service, [("A", 2)])
    await service.apply_discount(cart.id, "SAVE10")
    payment_provider.fail_with = 500

    with pytest.raises(UpstreamPaymentError):
        await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)

    assert await _counters(db_session, store, "A") == (5, 0)
    await db_session.refresh(discount)
    assert discount.usage_count == 0
    cart = await service.get_cart(cart.id)
    assert cart.status == CartStatus.OPEN.value
    assert cart.checked_out_at is None


async def test_exhausted_discount_fails_checkout_and_releases_holds(service, db_session, store, make_sku,
                                                                     make_discount):
    await make_sku("A", on_hand=5)
    discount = await make_discount(code="ONCE", usage_limit=1)
    cart = await _cart_with(service, [("A", 1)])
    await service.apply_discount(cart.id, "ONCE")
    await db_session.execute(update(type(discount)).where(type(discount).id == discount.id).values(usage_count=1))
    await db_session.commit()

    with pytest.raises(DiscountLimitExhaustedError):
        await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)

    assert await _counters(db_session, store, "A") == (5, 0)


async def test_checkout_reserves_discount_use(service, db_session, store, make_sku, make_discount):
    await make_sku("A", on_hand=5)
    discount = await make_discount(code="SAVE10", usage_limit=10)
    cart = await _cart_with(service, [("A", 1)])
    await service.apply_discount(cart.id, "SAVE10")

    await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)

    await db_session.refresh(discount)
    assert discount.usage_count == 1


async def test_checkout_of_expired_cart_conflicts(service, db_session, make_sku):
    await make_sku("A", on_hand=5)
    cart = await _cart_with(service, [("A", 1)])
    await db_session.execute(
        update(Cart).where(Cart.id == cart.id).values(expires_at=utcnow() - timedelta(minutes=1))
    )
    await db_session.commit()

    with pytest.raises(ConflictError):
        await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)


async def test_checkout_requires_connected_provider(db_session, store, make_sku):
    await make_sku("A", on_hand=5)
    service = CartService(db_session, store, payment_client=None)
    cart = await _cart_with(service, [("A", 1)])

    with pytest.raises(InvalidRequestError):
        await service.checkout(cart.id, SUCCESS_URL, CANCEL_URL)
