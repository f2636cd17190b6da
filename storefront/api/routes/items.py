"""
Catalog item routes

Booking, purchase and cancellation are thin wrappers around
ReservationEngine; domain errors are rendered by the error handler.
"""
from typing import FrozenSet, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from storefront.api.deps import (
    get_capabilities,
    get_catalog_service,
    get_current_user,
    get_reservation_engine,
)
from storefront.core.permissions import Capability
from storefront.core.rate_limit import checkout_limit
from storefront.models import ItemStatus, User
from storefront.schemas import ItemCreate, ItemList, ItemResponse, OrderResponse
from storefront.services import CatalogService, ReservationEngine

router = APIRouter(prefix="/items", tags=["items"])

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


@router.get("", response_model=ItemList)
async def list_items(
    status_filter: Optional[ItemStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Items per page"),
    catalog: CatalogService = Depends(get_catalog_service),
):
    items, total = await catalog.list_items(status=status_filter, page=page, per_page=per_page)
    return ItemList(
        items=[ItemResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/{item_id}", response_model=ItemResponse)
async def get_item(item_id: int, catalog: CatalogService = Depends(get_catalog_service)):
    return await catalog.get_item(item_id)


@router.post("", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
async def create_item(
    payload: ItemCreate,
    user: User = Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog_service),
):
    """List a new item for sale; the caller becomes its owner."""
    return await catalog.create_item(
        owner_id=user.id,
        name=payload.name,
        price=payload.price,
        description=payload.description,
    )


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_item(
    item_id: int,
    user: User = Depends(get_current_user),
    capabilities: FrozenSet[Capability] = Depends(get_capabilities),
    catalog: CatalogService = Depends(get_catalog_service),
):
    await catalog.delete_item(item_id, user.id, capabilities)


@router.post("/{item_id}/book", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@checkout_limit()
async def book_item(
    request: Request,
    item_id: int,
    user: User = Depends(get_current_user),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return await engine.book(item_id, user.id)


@router.post("/{item_id}/purchase", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@checkout_limit()
async def purchase_item(
    request: Request,
    item_id: int,
    user: User = Depends(get_current_user),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    """Buy the item, paying from the caller's balance."""
    return await engine.purchase(item_id, user.id)


@router.post("/{item_id}/cancel-booking", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_booking(
    item_id: int,
    user: User = Depends(get_current_user),
    capabilities: FrozenSet[Capability] = Depends(get_capabilities),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    await engine.cancel_booking(item_id, user.id, capabilities)
