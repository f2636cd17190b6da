"""
Item status projection

Order history is the source of truth for an item's inventory status. These
helpers derive the status fields from the orders and copy them onto the item;
they do no I/O so the mapping can be tested on plain objects.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from storefront.models.item import ItemStatus
from storefront.models.order import OrderStatus

ORDER_TO_ITEM_STATUS = {
    OrderStatus.PENDING: ItemStatus.BOOKED,
    OrderStatus.CONFIRMED: ItemStatus.BOOKED,
    OrderStatus.COMPLETED: ItemStatus.SOLD,
    OrderStatus.CANCELLED: ItemStatus.AVAILABLE,
}


@dataclass(frozen=True)
class ItemState:
    status: ItemStatus
    reserved_by_id: Optional[int] = None
    reservation_expiry: Optional[datetime] = None
    buyer_id: Optional[int] = None


AVAILABLE_STATE = ItemState(status=ItemStatus.AVAILABLE)


def order_sort_key(order):
    """Creation time first; equal timestamps fall back to the larger id."""
    return (order.created_at, order.id or 0)


def latest_order(orders: Iterable):
    return max(orders, key=order_sort_key, default=None)


def project_item_state(orders: Iterable, ttl: timedelta) -> ItemState:
    """
    Derive the item state from its orders.

    The latest order wins: PENDING/CONFIRMED -> BOOKED by that order's user,
    COMPLETED -> SOLD to that user, CANCELLED or no orders -> AVAILABLE.
    A booking order without a stored hold end expires `ttl` after creation.
    """
    order = latest_order(orders)
    if order is None:
        return AVAILABLE_STATE

    status = ORDER_TO_ITEM_STATUS[OrderStatus(order.status)]
    if status == ItemStatus.BOOKED:
        expiry = order.expires_at or (order.created_at + ttl)
        return ItemState(status=status, reserved_by_id=order.user_id, reservation_expiry=expiry)
    if status == ItemStatus.SOLD:
        return ItemState(status=status, buyer_id=order.user_id)
    return AVAILABLE_STATE


def read_item_state(item) -> ItemState:
    return ItemState(
        status=ItemStatus(item.status),
        reserved_by_id=item.reserved_by_id,
        reservation_expiry=item.reservation_expiry,
        buyer_id=item.buyer_id,
    )


def apply_item_state(item, state: ItemState) -> bool:
    """Write `state` onto the item. Returns True if anything changed."""
    if read_item_state(item) == state:
        return False
    item.status = state.status
    item.reserved_by_id = state.reserved_by_id
    item.reservation_expiry = state.reservation_expiry
    item.buyer_id = state.buyer_id
    return True


def invariant_violations(item) -> List[str]:
    """List every nullability rule the item currently breaks."""
    problems = []
    booked = item.status == ItemStatus.BOOKED
    sold = item.status == ItemStatus.SOLD
    if booked != (item.reserved_by_id is not None):
        problems.append("reserved_by_id must be set exactly when BOOKED")
    if booked != (item.reservation_expiry is not None):
        problems.append("reservation_expiry must be set exactly when BOOKED")
    if sold != (item.buyer_id is not None):
        problems.append("buyer_id must be set exactly when SOLD")
    return problems
