from storefront.schemas.reservation import (
    BalanceResponse,
    ItemCreate,
    ItemList,
    ItemResponse,
    OrderList,
    OrderResponse,
    OrderStats,
    OrderStatusUpdate,
    ReconcileResponse,
    TopUpRequest,
)

__all__ = [
    "BalanceResponse",
    "ItemCreate",
    "ItemList",
    "ItemResponse",
    "OrderList",
    "OrderResponse",
    "OrderStats",
    "OrderStatusUpdate",
    "ReconcileResponse",
    "TopUpRequest",
]
