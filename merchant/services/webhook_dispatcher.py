"""
Outbound webhook dispatcher.

Business events fan out to every active subscription of the tenant whose
patterns match. Each match gets a persisted `webhook_deliveries` row in
`pending`; the row is the unit of work, the asyncio task that delivers it is
disposable. Outcome classification per attempt:

- 2xx                        -> success (terminal)
- 4xx other than 429         -> failed  (terminal, retrying will not help)
- 429, 5xx, network, timeout -> retried with exponential backoff until the
                                attempts run out, then failed

Deliveries stranded by a restart are picked up again by the scheduler
(`requeue_stale_pending`), and `retry_failed` re-queues failed rows that still
have attempts left inside the retry window.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from merchant.core.config import get_settings
from merchant.core.enums import DeliveryStatus, SubscriptionStatus, WebhookEventType
from merchant.core.exceptions import DeliveryError, NotFoundError
from merchant.core.utils import new_id, truncate, utcnow
from merchant.models.webhook import WebhookDelivery, WebhookSubscription

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Merchant-Signature"
TIMESTAMP_HEADER = "X-Merchant-Timestamp"
DELIVERY_ID_HEADER = "X-Merchant-Delivery-Id"


def sign_payload(body: str, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class WebhookDispatcher:
    """
    Creates delivery records and delivers them out-of-band.

    Holds no delivery state in memory beyond the set of running tasks; every
    decision is taken from, and written back to, the delivery row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.max_attempts = max_attempts if max_attempts is not None else settings.WEBHOOK_MAX_ATTEMPTS
        self.backoff_base = backoff_base if backoff_base is not None else settings.WEBHOOK_BACKOFF_BASE_SECONDS
        self.timeout = timeout if timeout is not None else settings.WEBHOOK_TIMEOUT_SECONDS
        self.retry_window = timedelta(hours=settings.WEBHOOK_RETRY_WINDOW_HOURS)
        self.retry_batch_size = settings.WEBHOOK_RETRY_BATCH_SIZE
        self.pending_stale_after = timedelta(minutes=settings.WEBHOOK_PENDING_STALE_MINUTES)
        self.user_agent = settings.WEBHOOK_USER_AGENT
        self._http_client = http_client
        self._owns_client = http_client is None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt: base, 2*base, 4*base..."""
        return self.backoff_base * (2 ** (attempt - 1))

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        db: AsyncSession,
        store_id: str,
        event_type: WebhookEventType,
        data: Dict[str, Any],
    ) -> List[str]:
        """
        Record a pending delivery for every matching subscription and schedule
        delivery without waiting for it. Returns the delivery ids.
        """
        event_type = WebhookEventType(event_type).value
        result = await db.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.store_id == store_id,
                WebhookSubscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        subscriptions = [sub for sub in result.scalars().all() if sub.matches(event_type)]
        if not subscriptions:
            return []

        now = utcnow()
        delivery_ids = []
        for subscription in subscriptions:
            delivery_id = new_id()
            db.add(WebhookDelivery(
                id=delivery_id,
                subscription_id=subscription.id,
                event_type=event_type,
                payload={
                    "id": delivery_id,
                    "type": event_type,
                    "created_at": now.isoformat(),
                    "store_id": store_id,
                    "data": data,
                },
                status=DeliveryStatus.PENDING.value,
                attempts=0,
                next_attempt_at=now,
                created_at=now,
            ))
            delivery_ids.append(delivery_id)
        await db.commit()

        logger.info(f"Dispatching {event_type} to {len(delivery_ids)} subscription(s) for store {store_id}")
        self.schedule(delivery_ids)
        return delivery_ids

    async def notify_low_inventory(
        self,
        db: AsyncSession,
        store_id: str,
        sku: str,
        available: int,
        threshold: Optional[int] = None,
    ) -> List[str]:
        """Emit inventory.low when available stock is at or under the store's threshold."""
        if threshold is None:
            threshold = get_settings().LOW_STOCK_THRESHOLD
        if 0 <= available <= threshold:
            return await self.dispatch(db, store_id, WebhookEventType.INVENTORY_LOW, {
                "sku": sku,
                "available": available,
                "threshold": threshold,
            })
        return []

    def schedule(self, delivery_ids: List[str]) -> None:
        for delivery_id in delivery_ids:
            task = asyncio.create_task(self.deliver(delivery_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every in-flight delivery task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _attempt(self, url: str, secret: str, delivery_id: str, payload: Dict[str, Any]) -> httpx.Response:
        body = json.dumps(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, secret),
            TIMESTAMP_HEADER: str(int(time.time())),
            DELIVERY_ID_HEADER: delivery_id,
            "User-Agent": self.user_agent,
        }
        try:
            response = await self.http_client.post(url, content=body, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Timeout: {e}") from e
        except httpx.RequestError as e:
            raise DeliveryError(f"Network error: {e}") from e

        if 200 <= response.status_code < 300:
            return response
        raise DeliveryError(
            f"HTTP {response.status_code}",
            status_code=response.status_code,
            retryable=is_retryable_status(response.status_code),
        )

    async def _claim_attempt(self, db: AsyncSession, delivery: WebhookDelivery) -> Optional[int]:
        """
        Take the next attempt number for a pending delivery.

        Conditional on the attempt count we read, so two workers racing on the
        same row (in-flight task and a rescan) cannot both send attempt N.
        """
        attempt = delivery.attempts + 1
        result = await db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery.id,
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
                WebhookDelivery.attempts == delivery.attempts,
            )
            .values(attempts=attempt, last_attempt_at=utcnow())
        )
        await db.commit()
        if result.rowcount == 0:
            return None
        delivery.attempts = attempt
        return attempt

    async def _finish(
        self,
        db: AsyncSession,
        delivery_id: str,
        status: DeliveryStatus,
        response_code: Optional[int],
        response_body: Optional[str],
        next_attempt_at: Optional[datetime] = None,
    ) -> None:
        await db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(
                status=status.value,
                response_code=response_code,
                response_body=truncate(response_body),
                next_attempt_at=next_attempt_at,
            )
        )
        await db.commit()

    async def deliver(self, delivery_id: str) -> Optional[str]:
        """
        Run the attempt loop for one delivery and return its final status.

        Returns None if the row is gone, not pending, or owned by another worker.
        """
        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None or delivery.status != DeliveryStatus.PENDING.value:
                return None
            subscription = await db.get(WebhookSubscription, delivery.subscription_id)
            if subscription is None:
                return None
            url, secret, payload = subscription.url, subscription.secret, delivery.payload

            response_code: Optional[int] = None
            response_body: Optional[str] = None

            while delivery.attempts < self.max_attempts:
                attempt = await self._claim_attempt(db, delivery)
                if attempt is None:
                    logger.info(f"Delivery {delivery_id} claimed by another worker")
                    return None

                try:
                    response = await self._attempt(url, secret, delivery_id, payload)
                except DeliveryError as e:
                    response_code = e.status_code
                    response_body = str(e)
                    if not e.retryable:
                        await self._finish(db, delivery_id, DeliveryStatus.FAILED, response_code, response_body)
                        logger.warning(f"Delivery {delivery_id} to {url} rejected with {e} (not retried)")
                        return DeliveryStatus.FAILED.value
                    logger.info(f"Delivery {delivery_id} attempt {attempt}/{self.max_attempts} failed: {e}")
                else:
                    await self._finish(db, delivery_id, DeliveryStatus.SUCCESS, response.status_code, response.text)
                    logger.info(f"Delivery {delivery_id} to {url} succeeded on attempt {attempt}")
                    return DeliveryStatus.SUCCESS.value

                if attempt < self.max_attempts:
                    delay = self.backoff_delay(attempt)
                    await self._finish(
                        db, delivery_id, DeliveryStatus.PENDING, response_code, response_body,
                        next_attempt_at=utcnow() + timedelta(seconds=delay),
                    )
                    await asyncio.sleep(delay)

            await self._finish(db, delivery_id, DeliveryStatus.FAILED, response_code, response_body)
            logger.warning(f"Delivery {delivery_id} to {url} failed after {delivery.attempts} attempts")
            return DeliveryStatus.FAILED.value

    # ------------------------------------------------------------------
    # Sweeps and manual retry
    # ------------------------------------------------------------------

    async def retry_failed(self, now: Optional[datetime] = None) -> int:
        """
        Re-queue failed deliveries younger than the retry window whose attempt
        count is still below the maximum. Terminal client rejections (4xx
        other than 429) are left alone.
        """
        now = now or utcnow()
        retryable_outcome = or_(
            WebhookDelivery.response_code.is_(None),
            WebhookDelivery.response_code == 429,
            WebhookDelivery.response_code >= 500,
        )
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookDelivery.id)
                .join(WebhookSubscription, WebhookSubscription.id == WebhookDelivery.subscription_id)
                .where(
                    WebhookDelivery.status == DeliveryStatus.FAILED.value,
                    WebhookDelivery.attempts < self.max_attempts,
                    WebhookDelivery.created_at > now - self.retry_window,
                    WebhookSubscription.status == SubscriptionStatus.ACTIVE.value,
                    retryable_outcome,
                )
                .limit(self.retry_batch_size)
            )
            candidates = list(result.scalars().all())

            requeued = []
            for delivery_id in candidates:
                claimed = await db.execute(
                    update(WebhookDelivery)
                    .where(WebhookDelivery.id == delivery_id, WebhookDelivery.status == DeliveryStatus.FAILED.value)
                    .values(status=DeliveryStatus.PENDING.value, next_attempt_at=now)
                )
                await db.commit()
                if claimed.rowcount == 1:
                    requeued.append(delivery_id)

        if requeued:
            logger.info(f"Re-queued {len(requeued)} failed webhook deliveries")
        self.schedule(requeued)
        return len(requeued)

    async def requeue_stale_pending(self, now: Optional[datetime] = None) -> int:
        """Re-dispatch pending deliveries whose worker evidently died (restart, crash)."""
        now = now or utcnow()
        cutoff = now - self.pending_stale_after
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookDelivery.id)
                .where(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    WebhookDelivery.attempts < self.max_attempts,
                    or_(
                        WebhookDelivery.next_attempt_at < cutoff,
                        and_(WebhookDelivery.next_attempt_at.is_(None), WebhookDelivery.created_at < cutoff),
                    ),
                )
                .limit(self.retry_batch_size)
            )
            stale = list(result.scalars().all())

        if stale:
            logger.info(f"Re-dispatching {len(stale)} stale pending webhook deliveries")
        self.schedule(stale)
        return len(stale)

    async def retry_delivery(
        self,
        db: AsyncSession,
        store_id: str,
        subscription_id: str,
        delivery_id: str,
    ) -> WebhookDelivery:
        """Manual retry: reset the attempt count and re-dispatch."""
        delivery = await db.scalar(
            select(WebhookDelivery)
            .join(WebhookSubscription, WebhookSubscription.id == WebhookDelivery.subscription_id)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.subscription_id == subscription_id,
                WebhookSubscription.store_id == store_id,
            )
        )
        if delivery is None:
            raise NotFoundError("Delivery not found")

        await db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(status=DeliveryStatus.PENDING.value, attempts=0, next_attempt_at=utcnow())
        )
        await db.commit()
        await db.refresh(delivery)
        self.schedule([delivery_id])
        return delivery
