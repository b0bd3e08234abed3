"""
Outbound webhook management: subscriptions and their deliveries.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.exceptions import NotFoundError
from merchant.core.security import get_current_store
from merchant.core.utils import generate_webhook_secret
from merchant.dependencies import get_db, get_dispatcher
from merchant.models.store import Store
from merchant.models.webhook import WebhookDelivery, WebhookSubscription
from merchant.schemas.webhook import (
    DeliveryRead,
    DeliverySummary,
    SubscriptionCreate,
    SubscriptionCreated,
    SubscriptionDetail,
    SubscriptionRead,
    SubscriptionUpdate,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])

RECENT_DELIVERIES = 20


async def _get_subscription(db: AsyncSession, store: Store, subscription_id: str) -> WebhookSubscription:
    subscription = await db.scalar(
        select(WebhookSubscription).where(
            WebhookSubscription.id == subscription_id,
            WebhookSubscription.store_id == store.id,
        )
    )
    if subscription is None:
        raise NotFoundError("Webhook not found")
    return subscription


@router.get("", response_model=List[SubscriptionRead])
async def list_subscriptions(store: Store = Depends(get_current_store), db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(WebhookSubscription)
        .where(WebhookSubscription.store_id == store.id)
        .order_by(WebhookSubscription.created_at.desc())
    )
    return [SubscriptionRead.from_orm_model(sub) for sub in result.scalars().all()]


@router.post("", response_model=SubscriptionCreated, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreate,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    """Register an endpoint. The signing secret is only returned here and on rotation."""
    subscription = WebhookSubscription(
        store_id=store.id,
        url=body.url,
        events=body.events,
        secret=generate_webhook_secret(),
    )
    db.add(subscription)
    await db.commit()
    logger.info(f"Created webhook {subscription.id} for store {store.id}: {body.events}")
    return SubscriptionCreated.from_orm_model(subscription)


@router.get("/{subscription_id}", response_model=SubscriptionDetail)
async def get_subscription(
    subscription_id: str,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    subscription = await _get_subscription(db, store, subscription_id)
    result = await db.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.subscription_id == subscription.id)
        .order_by(WebhookDelivery.created_at.desc())
        .limit(RECENT_DELIVERIES)
    )
    detail = SubscriptionDetail.from_orm_model(subscription)
    detail.recent_deliveries = [DeliverySummary.from_orm_model(d) for d in result.scalars().all()]
    return detail


@router.patch("/{subscription_id}", response_model=SubscriptionRead)
async def update_subscription(
    subscription_id: str,
    body: SubscriptionUpdate,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    subscription = await _get_subscription(db, store, subscription_id)
    if body.url is not None:
        subscription.url = body.url
    if body.events is not None:
        subscription.events = body.events
    if body.status is not None:
        subscription.status = body.status.value
    await db.commit()
    await db.refresh(subscription)
    return SubscriptionRead.from_orm_model(subscription)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: str,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    subscription = await _get_subscription(db, store, subscription_id)
    await db.delete(subscription)
    await db.commit()
    logger.info(f"Deleted webhook {subscription_id} for store {store.id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{subscription_id}/rotate-secret", response_model=SubscriptionCreated)
async def rotate_subscription_secret(
    subscription_id: str,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    subscription = await _get_subscription(db, store, subscription_id)
    subscription.secret = generate_webhook_secret()
    await db.commit()
    return SubscriptionCreated.from_orm_model(subscription)


@router.get("/{subscription_id}/deliveries/{delivery_id}", response_model=DeliveryRead)
async def get_delivery(
    subscription_id: str,
    delivery_id: str,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    subscription = await _get_subscription(db, store, subscription_id)
    delivery = await db.scalar(
        select(WebhookDelivery).where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.subscription_id == subscription.id,
        )
    )
    if delivery is None:
        raise NotFoundError("Delivery not found")
    return DeliveryRead.from_orm_model(delivery)


@router.post("/{subscription_id}/deliveries/{delivery_id}/retry", response_model=DeliveryRead)
async def retry_delivery(
    subscription_id: str,
    delivery_id: str,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """Reset the attempt count and re-dispatch a single delivery."""
    delivery = await dispatcher.retry_delivery(db, store.id, subscription_id, delivery_id)
    return DeliveryRead.from_orm_model(delivery)
