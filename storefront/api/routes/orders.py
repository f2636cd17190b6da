"""
Order routes

The caller's own order history, paginated.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from storefront.api.deps import get_current_user, get_order_service
from storefront.models import OrderStatus, User
from storefront.schemas import OrderList, OrderResponse
from storefront.services import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


@router.get("", response_model=OrderList)
async def list_my_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Items per page"),
    user: User = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    rows, total = await orders.list_orders(user_id=user.id, status=status_filter, page=page, per_page=per_page)
    return OrderList(
        orders=[OrderResponse.model_validate(order) for order in rows],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/active", response_model=list[OrderResponse])
async def list_my_active_orders(
    user: User = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    """Bookings that still hold an item for the caller."""
    return await orders.list_active_orders(user.id)
