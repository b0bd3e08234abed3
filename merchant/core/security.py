"""
Tenant context for the API.

Authentication and rate limiting happen upstream; the auth layer forwards the
resolved tenant as the X-Store-Id header. Everything here only turns that id
into an enabled Store row.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.enums import StoreStatus
from merchant.dependencies import get_db
from merchant.models.store import Store

STORE_HEADER = "X-Store-Id"


async def get_store_by_id(db: AsyncSession, store_id: Optional[str]) -> Store:
    if not store_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {STORE_HEADER} header",
        )

    store = await db.get(Store, store_id)
    if store is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown store")
    if store.status != StoreStatus.ENABLED.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Store is disabled")
    return store


async def get_current_store(
    x_store_id: Optional[str] = Header(None, alias=STORE_HEADER),
    db: AsyncSession = Depends(get_db),
) -> Store:
    """Dependency resolving the calling tenant."""
    return await get_store_by_id(db, x_store_id)
