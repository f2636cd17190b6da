from storefront.models.user import User
from storefront.models.item import Item, ItemStatus
from storefront.models.order import Order, OrderStatus, OrderReason, OPEN_ORDER_STATUSES

__all__ = [
    "User",
    "Item",
    "ItemStatus",
    "Order",
    "OrderStatus",
    "OrderReason",
    "OPEN_ORDER_STATUSES",
]
