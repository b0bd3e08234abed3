from typing import List, Optional

from pydantic import Field

from merchant.core.enums import InventoryReason
from merchant.schemas.base import BaseSchema


class InventoryLevelRead(BaseSchema):
    sku: str
    on_hand: int
    reserved: int
    available: int


class InventoryAdjust(BaseSchema):
    delta: int
    reason: InventoryReason


class Pagination(BaseSchema):
    has_more: bool
    next_cursor: Optional[str] = None


class InventoryPage(BaseSchema):
    items: List[InventoryLevelRead] = Field(default_factory=list)
    pagination: Pagination
