"""
Item, order and balance schemas
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from storefront.models.item import ItemStatus
from storefront.models.order import OrderStatus


class ItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class ItemResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    price: Decimal
    owner_id: int
    status: ItemStatus
    reserved_by_id: Optional[int]
    reservation_expiry: Optional[datetime]
    buyer_id: Optional[int]

    class Config:
        from_attributes = True


class ItemList(BaseModel):
    items: List[ItemResponse]
    total: int
    page: int
    per_page: int


class OrderResponse(BaseModel):
    id: int
    item_id: int
    user_id: int
    quantity: int
    total_amount: Decimal
    status: OrderStatus
    created_at: datetime
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]
    update_reason: Optional[str]

    class Config:
        from_attributes = True


class OrderList(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    per_page: int


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderStats(BaseModel):
    by_status: Dict[str, int]
    total_revenue: Decimal


class ReconcileResponse(BaseModel):
    item: ItemResponse
    repaired: bool


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal


class TopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
