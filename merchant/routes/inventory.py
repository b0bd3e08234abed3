import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.config import get_settings
from merchant.core.security import get_current_store
from merchant.dependencies import get_db, get_dispatcher
from merchant.models.store import Store
from merchant.schemas.inventory import InventoryAdjust, InventoryLevelRead, InventoryPage, Pagination
from merchant.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/inventory", tags=["inventory"])


def _threshold(store: Store) -> int:
    if store.low_stock_threshold is not None:
        return store.low_stock_threshold
    return get_settings().LOW_STOCK_THRESHOLD


@router.get("", response_model=InventoryPage)
async def list_inventory(
    low_stock: bool = Query(False, description="Only SKUs at or under the low-stock threshold"),
    cursor: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    ledger = InventoryLedger(db, store.id)
    levels, next_cursor = await ledger.list_levels(
        low_stock_threshold=_threshold(store) if low_stock else None,
        cursor=cursor,
        limit=limit,
    )
    return InventoryPage(
        items=[InventoryLevelRead.from_orm_model(level) for level in levels],
        pagination=Pagination(has_more=next_cursor is not None, next_cursor=next_cursor),
    )


@router.get("/{sku}", response_model=InventoryLevelRead)
async def get_inventory(
    sku: str,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
):
    level = await InventoryLedger(db, store.id).get_level(sku)
    return InventoryLevelRead.from_orm_model(level)


@router.post("/{sku}/adjust", response_model=InventoryLevelRead)
async def adjust_inventory(
    sku: str,
    body: InventoryAdjust,
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """Manual stock correction (restock, correction, damaged, return)."""
    store_id, threshold = store.id, _threshold(store)
    level = await InventoryLedger(db, store_id).adjust(sku, body.delta, body.reason)
    result = InventoryLevelRead.from_orm_model(level)

    try:
        await dispatcher.notify_low_inventory(db, store_id, sku, result.available, threshold)
    except Exception:
        logger.exception(f"Low-stock notification failed for {store_id}/{sku}")
    return result
