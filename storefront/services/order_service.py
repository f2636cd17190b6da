"""
OrderService - read side of the order ledger

Listing and reporting only. Status changes go through ReservationEngine so the
item projection is kept in step.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select

from storefront.core.database import AsyncSessionLocal
from storefront.core.exceptions import NotFoundError
from storefront.core.utils import to_money
from storefront.models import Order, OrderStatus, OPEN_ORDER_STATUSES

logger = logging.getLogger(__name__)


class OrderService:

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def get_order(self, order_id: int) -> Order:
        async with self._session_factory() as db:
            order = await db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", entity="order", entity_id=order_id)
        return order

    async def list_orders(
        self,
        user_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Order], int]:
        """Newest first, optionally filtered by user and status."""
        query = select(Order)
        count_query = select(func.count(Order.id))
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
            count_query = count_query.where(Order.user_id == user_id)
        if status is not None:
            query = query.where(Order.status == status)
            count_query = count_query.where(Order.status == status)

        async with self._session_factory() as db:
            total = (await db.execute(count_query)).scalar() or 0
            result = await db.execute(
                query.order_by(Order.created_at.desc(), Order.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            orders = list(result.scalars().all())

        logger.debug("Listed %d of %d orders (user=%s status=%s)", len(orders), total, user_id, status)
        return orders, total

    async def list_active_orders(self, user_id: int) -> List[Order]:
        """Orders that still hold an item for the user."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.user_id == user_id, Order.status.in_(OPEN_ORDER_STATUSES))
                .order_by(Order.created_at.desc(), Order.id.desc())
            )
            return list(result.scalars().all())

    async def item_history(self, item_id: int) -> List[Order]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.item_id == item_id)
                .order_by(Order.created_at, Order.id)
            )
            return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order.status, func.count(Order.id)).group_by(Order.status)
            )
            counts = {OrderStatus(status).value: int(count) for status, count in result.all()}
        return {status.value: counts.get(status.value, 0) for status in OrderStatus}

    async def total_revenue(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Decimal:
        """Sum of completed sales, optionally bounded by completion time."""
        query = select(func.coalesce(func.sum(Order.total_amount), 0)).where(
            Order.status == OrderStatus.COMPLETED
        )
        if since is not None:
            query = query.where(Order.completed_at >= since)
        if until is not None:
            query = query.where(Order.completed_at <= until)

        async with self._session_factory() as db:
            total = (await db.execute(query)).scalar()
        return to_money(total or 0)
