# tests/unit/services/test_expiration_reaper.py
from datetime import timedelta

import pytest
from sqlalchemy import update

from merchant.core.enums import CartStatus
from merchant.core.utils import as_utc, utcnow
from merchant.models.cart import Cart
from merchant.models.discount import Discount
from merchant.services.checkout_service import CartService
from merchant.services.expiration_reaper import ExpirationReaper
from merchant.services.inventory_ledger import InventoryLedger
from merchant.services.payment_ingestion import CHECKOUT_COMPLETED, PaymentEventIngestor

GRACE = timedelta(minutes=60)


@pytest.fixture
def reaper(session_factory):
    return ExpirationReaper(session_factory, grace_period=GRACE)


@pytest.fixture
def service(db_session, store, payment_client):
    return CartService(db_session, store, payment_client)


async def _checked_out(service, items, discount_code=None):
    cart = await service.create_cart("buyer@example.com")
    await service.set_items(cart.id, items)
    if discount_code:
        await service.apply_discount(cart.id, discount_code)
    return await service.checkout(cart.id, "https://shop.example.com/ok", "https://shop.example.com/cancel")


async def _cart(db, cart_id):
    return await db.get(Cart, cart_id, populate_existing=True)


async def _counters(db, store_id, sku):
    level = await InventoryLedger(db, store_id).get_level(sku)
    return level.on_hand, level.reserved


async def test_abandoned_checkout_releases_holds_and_discount(db_session, store, make_sku, make_discount, service,
                                                              reaper):
    await make_sku("A", on_hand=5)
    discount = await make_discount(code="SAVE10", usage_limit=10)
    cart = await _checked_out(service, [("A", 2)], discount_code="SAVE10")
    assert await _counters(db_session, store.id, "A") == (5, 2)

    result = await reaper.run(now=utcnow() + GRACE + timedelta(minutes=1))

    assert result == {"expired_open": 0, "released_abandoned": 1}
    assert await _counters(db_session, store.id, "A") == (5, 0)
    assert (await _cart(db_session, cart.id)).status == CartStatus.EXPIRED.value
    assert (await db_session.get(Discount, discount.id, populate_existing=True)).usage_count == 0


async def test_checkout_within_grace_period_is_left_alone(db_session, store, make_sku, service, reaper):
    await make_sku("A", on_hand=5)
    cart = await _checked_out(service, [("A", 2)])

    result = await reaper.run(now=utcnow() + GRACE - timedelta(minutes=5))

    assert result["released_abandoned"] == 0
    assert await _counters(db_session, store.id, "A") == (5, 2)
    assert (await _cart(db_session, cart.id)).status == CartStatus.CHECKED_OUT.value


async def test_overlapping_runs_release_once(db_session, store, make_sku, service, reaper):
    await make_sku("A", on_hand=5, reserved=1)
    await _checked_out(service, [("A", 2)])
    later = utcnow() + GRACE + timedelta(minutes=1)

    first = await reaper.run(now=later)
    second = await reaper.run(now=later)

    assert first["released_abandoned"] == 1
    assert second["released_abandoned"] == 0
    assert await _counters(db_session, store.id, "A") == (5, 1)


async def test_checkout_with_order_is_never_released(db_session, store, make_sku, service, reaper):
    await make_sku("A", on_hand=5)
    cart = await _checked_out(service, [("A", 2)])
    await PaymentEventIngestor(db_session, store).ingest({
        "id": "evt_1",
        "type": CHECKOUT_COMPLETED,
        "data": {"object": {"id": cart.checkout_session_id, "metadata": {"cart_id": cart.id}}},
    })

    result = await reaper.run(now=utcnow() + GRACE + timedelta(hours=1))

    assert result["released_abandoned"] == 0
    assert await _counters(db_session, store.id, "A") == (3, 0)


async def test_open_cart_past_ttl_is_expired_without_touching_stock(db_session, store, make_sku, service, reaper):
    await make_sku("A", on_hand=5, reserved=1)
    cart = await service.create_cart("buyer@example.com")
    await service.set_items(cart.id, [("A", 2)])

    result = await reaper.run(now=as_utc(cart.expires_at) + timedelta(minutes=1))

    assert result == {"expired_open": 1, "released_abandoned": 0}
    assert (await _cart(db_session, cart.id)).status == CartStatus.EXPIRED.value
    assert await _counters(db_session, store.id, "A") == (5, 1)


async def test_claimed_but_unfinished_checkout_waits_for_grace_period(db_session, store, make_sku, service, reaper):
    await make_sku("A", on_hand=5)
    cart = await service.create_cart("buyer@example.com")
    await service.set_items(cart.id, [("A", 1)])
    claimed_at = utcnow()
    await db_session.execute(update(Cart).where(Cart.id == cart.id).values(checked_out_at=claimed_at))
    await db_session.commit()
    after_ttl = as_utc(cart.expires_at) + timedelta(minutes=1)

    assert (await reaper.run(now=after_ttl))["expired_open"] == 0
    assert (await reaper.run(now=claimed_at + GRACE + timedelta(minutes=1)))["expired_open"] == 1
    assert (await _cart(db_session, cart.id)).status == CartStatus.EXPIRED.value


async def test_unfinished_checkout_warning_lists_items(db_session, store, make_sku, service, reaper, mocker):
    await make_sku("A", on_hand=5)
    await make_sku("B", on_hand=5)
    cart = await service.create_cart("buyer@example.com")
    await service.set_items(cart.id, [("A", 2), ("B", 1)])
    claimed_at = utcnow()
    await db_session.execute(update(Cart).where(Cart.id == cart.id).values(checked_out_at=claimed_at))
    await db_session.commit()
    mock_logger = mocker.patch("merchant.services.expiration_reaper.logger")

    await reaper.run(now=max(claimed_at, as_utc(cart.expires_at)) + GRACE + timedelta(minutes=1))

    [call] = mock_logger.warning.call_args_list
    assert cart.id in call.args[0]
    assert "2 x A, 1 x B" in call.args[0]
