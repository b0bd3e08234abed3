from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.enums import OrderStatus
from merchant.core.security import get_current_store
from merchant.dependencies import get_db, get_dispatcher, get_payment_client
from merchant.models.store import Store
from merchant.schemas.order import OrderRead, OrderUpdate, RefundRead, RefundRequest
from merchant.services.order_service import OrderService

router = APIRouter(prefix="/v1/orders", tags=["orders"])


def get_order_service(
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
    payment_client=Depends(get_payment_client),
) -> OrderService:
    return OrderService(db, store, dispatcher=dispatcher, payment_client=payment_client)


@router.get("")
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: OrderService = Depends(get_order_service),
):
    orders, has_more = await service.list_orders(status=status, limit=limit, offset=offset)
    return {
        "items": [OrderRead.from_order(order) for order in orders],
        "pagination": {"has_more": has_more, "offset": offset, "limit": limit},
    }


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    return OrderRead.from_order(await service.get_order(order_id))


@router.patch("/{order_id}", response_model=OrderRead)
async def update_order(order_id: str, body: OrderUpdate, service: OrderService = Depends(get_order_service)):
    order = await service.update_order(
        order_id,
        status=body.status,
        tracking_number=body.tracking_number,
        tracking_url=body.tracking_url,
    )
    return OrderRead.from_order(order)


@router.post("/{order_id}/refund", response_model=RefundRead)
async def refund_order(
    order_id: str,
    body: Optional[RefundRequest] = None,
    service: OrderService = Depends(get_order_service),
):
    refund = await service.refund_order(order_id, amount_cents=body.amount_cents if body else None)
    return RefundRead.from_orm_model(refund)
