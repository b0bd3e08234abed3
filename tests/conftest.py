# tests/conftest.py
import os
import tempfile

# merchant.database builds its engine at import time
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'merchant_test_default.db')}",
)
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from typing import List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import merchant.models  # noqa: F401
from merchant.core.enums import DiscountType
from merchant.core.security import STORE_HEADER
from merchant.core.utils import generate_webhook_secret
from merchant.database import Base
from merchant.dependencies import get_db
from merchant.main import app
from merchant.models.catalog import Variant
from merchant.models.discount import Discount
from merchant.models.inventory import InventoryLevel
from merchant.models.store import Store
from merchant.models.webhook import WebhookSubscription
from merchant.services.payment import PaymentClient
from merchant.services.webhook_dispatcher import WebhookDispatcher

STORE_ID = "store-test-0001"
PAYMENT_WEBHOOK_SECRET = "whsec_payment_test"


@pytest.fixture
async def test_engine(tmp_path):
    """Function-scoped SQLite database, schema created from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def store(db_session):
    store = Store(
        id=STORE_ID,
        name="Test Store",
        payment_secret_key="sk_test_123",
        payment_webhook_secret=PAYMENT_WEBHOOK_SECRET,
    )
    db_session.add(store)
    await db_session.commit()
    return store


@pytest.fixture
def make_sku(db_session, store):
    """Seed a catalog variant with its inventory counters."""
    async def _make(sku: str, on_hand: int, reserved: int = 0, price_cents: int = 1000, status: str = "active"):
        db_session.add(Variant(store_id=store.id, sku=sku, title=f"Item {sku}", price_cents=price_cents, status=status))
        db_session.add(InventoryLevel(store_id=store.id, sku=sku, on_hand=on_hand, reserved=reserved))
        await db_session.commit()
    return _make


@pytest.fixture
def make_discount(db_session, store):
    async def _make(code: str = "SAVE10", type: DiscountType = DiscountType.PERCENTAGE, value: int = 10, **kwargs):
        discount = Discount(store_id=store.id, code=code, type=type.value, value=value, **kwargs)
        db_session.add(discount)
        await db_session.commit()
        return discount
    return _make


@pytest.fixture
def make_subscription(db_session, store):
    async def _make(events: List[str], url: str = "https://hooks.example.com/merchant"):
        subscription = WebhookSubscription(
            store_id=store.id, url=url, events=events, secret=generate_webhook_secret()
        )
        db_session.add(subscription)
        await db_session.commit()
        return subscription
    return _make


class FakeSubscriber:
    """Records outbound webhook requests and answers with queued status codes (200 when empty)."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: List[object] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if self.responses else 200
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text=f"status {outcome}")


@pytest.fixture
def subscriber():
    return FakeSubscriber()


@pytest.fixture
async def dispatcher(session_factory, subscriber):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(subscriber.handler))
    dispatcher = WebhookDispatcher(session_factory, http_client=http_client, backoff_base=0)
    yield dispatcher
    await dispatcher.drain()
    await http_client.aclose()


class FakePaymentProvider:
    """Hosted-checkout provider stand-in for checkout sessions, coupons and refunds."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.fail_with: Optional[int] = None
        self.session_count = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"message": "provider unavailable"}})
        if request.url.path.endswith("/checkout/sessions"):
            self.session_count += 1
            session_id = f"cs_test_{self.session_count}"
            return httpx.Response(200, json={"id": session_id, "url": f"https://pay.example.com/{session_id}"})
        if request.url.path.endswith("/coupons"):
            return httpx.Response(200, json={"id": "co_test_1", "duration": "once"})
        if request.url.path.endswith("/refunds"):
            form = dict(httpx.QueryParams(request.content.decode()))
            return httpx.Response(200, json={"id": "re_test_1", "amount": int(form["amount"]), "status": "succeeded"})
        return httpx.Response(404, json={"error": {"message": "unknown endpoint"}})


@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest.fixture
async def payment_client(payment_provider):
    client = PaymentClient(
        api_base="https://payments.example.com/v1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(payment_provider.handler)),
    )
    yield client
    await client.aclose()


@pytest.fixture
async def api_client(session_factory, store, dispatcher, payment_client):
    """HTTP client against the app, with the test database and fakes wired in (lifespan not run)."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.dispatcher = dispatcher
    app.state.payment_client = payment_client
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", headers={STORE_HEADER: STORE_ID}) as client:
        yield client
    app.dependency_overrides.clear()
