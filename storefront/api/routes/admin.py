"""
Admin routes for the order ledger

Every status edit goes through ReservationEngine, which re-projects the item
in the same transaction.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from storefront.api.deps import (
    get_catalog_service,
    get_current_admin,
    get_order_service,
    get_reservation_engine,
)
from storefront.models import OrderStatus, User
from storefront.schemas import (
    ItemResponse,
    OrderList,
    OrderResponse,
    OrderStats,
    OrderStatusUpdate,
    ReconcileResponse,
)
from storefront.services import CatalogService, OrderService, ReservationEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


@router.get("/orders", response_model=OrderList)
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    user_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    admin: User = Depends(get_current_admin),
    orders: OrderService = Depends(get_order_service),
):
    rows, total = await orders.list_orders(user_id=user_id, status=status_filter, page=page, per_page=per_page)
    return OrderList(
        orders=[OrderResponse.model_validate(order) for order in rows],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/orders/stats", response_model=OrderStats)
async def order_stats(
    admin: User = Depends(get_current_admin),
    orders: OrderService = Depends(get_order_service),
):
    return OrderStats(
        by_status=await orders.count_by_status(),
        total_revenue=await orders.total_revenue(),
    )


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    admin: User = Depends(get_current_admin),
    orders: OrderService = Depends(get_order_service),
):
    return await orders.get_order(order_id)


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    admin: User = Depends(get_current_admin),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    logger.info("Admin %s setting order %s to %s", admin.id, order_id, payload.status.value)
    return await engine.update_order_status(order_id, payload.status)


@router.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_order(
    order_id: int,
    admin: User = Depends(get_current_admin),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    logger.info("Admin %s deleting order %s", admin.id, order_id)
    await engine.delete_order(order_id)


@router.get("/items/{item_id}/orders", response_model=List[OrderResponse])
async def item_order_history(
    item_id: int,
    admin: User = Depends(get_current_admin),
    catalog: CatalogService = Depends(get_catalog_service),
    orders: OrderService = Depends(get_order_service),
):
    """Every order ever placed for the item, oldest first."""
    await catalog.get_item(item_id)
    return await orders.item_history(item_id)


@router.post("/items/{item_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_item(
    item_id: int,
    admin: User = Depends(get_current_admin),
    engine: ReservationEngine = Depends(get_reservation_engine),
    catalog: CatalogService = Depends(get_catalog_service),
):
    repaired = await engine.reconcile(item_id)
    item = await catalog.get_item(item_id)
    return ReconcileResponse(item=ItemResponse.model_validate(item), repaired=repaired)
