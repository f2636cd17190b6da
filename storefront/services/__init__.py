# Services layer for business logic
from storefront.services.balance_service import BalanceService
from storefront.services.catalog_service import CatalogService
from storefront.services.order_service import OrderService
from storefront.services.reservation_engine import ReservationEngine

__all__ = [
    "BalanceService",
    "CatalogService",
    "OrderService",
    "ReservationEngine",
]
