# tests/unit/services/test_order_service.py
import json

import pytest

from merchant.core.enums import OrderStatus
from merchant.core.exceptions import ConflictError, InvalidRequestError, NotFoundError
from merchant.services.checkout_service import CartService
from merchant.services.order_service import OrderService
from merchant.services.payment_ingestion import CHECKOUT_COMPLETED, PaymentEventIngestor


@pytest.fixture
async def order_id(db_session, store, make_sku, payment_client):
    """A paid order of 2 x A at 1500 cents (total 3000)."""
    await make_sku("A", on_hand=5, price_cents=1500)
    service = CartService(db_session, store, payment_client)
    cart = await service.create_cart("buyer@example.com")
    await service.set_items(cart.id, [("A", 2)])
    cart = await service.checkout(cart.id, "https://shop.example.com/ok", "https://shop.example.com/cancel")
    result = await PaymentEventIngestor(db_session, store).ingest({
        "id": "evt_1",
        "type": CHECKOUT_COMPLETED,
        "data": {"object": {"id": cart.checkout_session_id, "payment_intent": "pi_test_1",
                            "metadata": {"cart_id": cart.id}}},
    })
    return result.order_id


@pytest.fixture
def orders(db_session, store, dispatcher, payment_client):
    return OrderService(db_session, store, dispatcher=dispatcher, payment_client=payment_client)


async def test_get_order_is_tenant_scoped(db_session, order_id, orders):
    assert (await orders.get_order(order_id)).status == OrderStatus.PAID.value
    with pytest.raises(NotFoundError):
        await orders.get_order("missing")


async def test_list_orders_filters_and_paginates(order_id, orders):
    listed, has_more = await orders.list_orders(status=OrderStatus.PAID, limit=1)
    assert [order.id for order in listed] == [order_id]
    assert has_more is False

    listed, _ = await orders.list_orders(status=OrderStatus.SHIPPED)
    assert listed == []


async def test_ship_sets_tracking_and_emits_shipped(order_id, orders, make_subscription, dispatcher, subscriber):
    await make_subscription(["order.*"])

    order = await orders.update_order(order_id, status=OrderStatus.SHIPPED, tracking_number="1Z999")
    await dispatcher.drain()

    assert order.status == OrderStatus.SHIPPED.value
    assert order.tracking_number == "1Z999"
    assert order.shipped_at is not None
    [request] = subscriber.requests
    body = json.loads(request.content)
    assert body["type"] == "order.shipped"
    assert body["data"]["tracking"]["number"] == "1Z999"


async def test_tracking_only_update_emits_updated(order_id, orders, make_subscription, dispatcher, subscriber):
    await make_subscription(["order.updated"])

    await orders.update_order(order_id, tracking_url="https://track.example.com/1Z999")
    await dispatcher.drain()

    assert json.loads(subscriber.requests[0].content)["type"] == "order.updated"


async def test_invalid_transition_conflicts(order_id, orders):
    await orders.update_order(order_id, status=OrderStatus.CANCELED)
    with pytest.raises(ConflictError):
        await orders.update_order(order_id, status=OrderStatus.SHIPPED)


async def test_no_change_is_a_noop(order_id, orders, make_subscription, dispatcher, subscriber):
    await make_subscription(["*"])
    order = await orders.update_order(order_id, status=OrderStatus.PAID)
    await dispatcher.drain()

    assert order.status == OrderStatus.PAID.value
    assert subscriber.requests == []


async def test_partial_then_full_refund(order_id, orders, make_subscription, dispatcher, subscriber,
                                        payment_provider):
    await make_subscription(["order.*"])

    partial = await orders.refund_order(order_id, amount_cents=1000)
    assert partial.amount_cents == 1000
    assert (await orders.get_order(order_id)).status == OrderStatus.PAID.value

    rest = await orders.refund_order(order_id)
    assert rest.amount_cents == 2000
    assert (await orders.get_order(order_id)).status == OrderStatus.REFUNDED.value
    await dispatcher.drain()

    assert sorted(json.loads(r.content)["type"] for r in subscriber.requests) == ["order.refunded", "order.updated"]
    assert len(payment_provider.requests) == 3  # checkout session + two refunds


async def test_refund_rejects_amount_over_balance_and_repeat(order_id, orders):
    with pytest.raises(InvalidRequestError):
        await orders.refund_order(order_id, amount_cents=3001)

    await orders.refund_order(order_id)
    with pytest.raises(ConflictError):
        await orders.refund_order(order_id)
