"""
ReservationEngine - inventory reservation and fulfillment

Owns every write to Item status fields and Order status. Each public
operation is one database transaction:

1. Lock the item row (SELECT ... FOR UPDATE)
2. Validate the request against the current item state
3. Append or update Order rows (and debit the buyer on purchase)
4. Re-project the item status from its order history

The item row also carries a version counter. If another transaction committed
first, the flush fails with StaleDataError; the whole operation is then
re-evaluated in a fresh transaction, up to RESERVATION_CONFLICT_RETRIES times.
"""
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from storefront.core.config import settings
from storefront.core.database import AsyncSessionLocal
from storefront.core.exceptions import (
    AlreadySoldError,
    ConcurrencyConflictError,
    ForbiddenError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    ReservedByOtherError,
)
from storefront.core.permissions import Capability, can_cancel_booking, capabilities_for_item
from storefront.core.utils import to_money, utcnow
from storefront.models import Item, ItemStatus, Order, OrderReason, OrderStatus, OPEN_ORDER_STATUSES, User
from storefront.services.balance_service import BalanceService
from storefront.services.item_projection import apply_item_state, latest_order, project_item_state, read_item_state

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReservationEngine:
    """Book, purchase, cancel and reconcile single catalog items."""

    def __init__(
        self,
        session_factory=None,
        ttl: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.ttl = ttl or timedelta(hours=settings.RESERVATION_TTL_HOURS)
        self.max_attempts = max_attempts or settings.RESERVATION_CONFLICT_RETRIES
        self._clock = clock

    @property
    def session_factory(self):
        return self._session_factory

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _run_in_transaction(
        self,
        operation: str,
        item_id: int,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        for attempt in range(1, self.max_attempts + 1):
            async with self._session_factory() as db:
                try:
                    async with db.begin():
                        return await work(db)
                except StaleDataError:
                    logger.warning(
                        "Version conflict on item %s during %s (attempt %d/%d)",
                        item_id, operation, attempt, self.max_attempts,
                    )
        raise ConcurrencyConflictError(
            f"Item {item_id} kept changing concurrently; {operation} was not applied",
            details={"item_id": item_id, "operation": operation, "attempts": self.max_attempts},
        )

    @staticmethod
    async def _lock_item(db: AsyncSession, item_id: int) -> Item:
        result = await db.execute(
            select(Item).where(Item.id == item_id).with_for_update()
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundError(f"Item {item_id} not found", entity="item", entity_id=item_id)
        return item

    @staticmethod
    async def _require_user(db: AsyncSession, user_id: int) -> User:
        user = await db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError(f"User {user_id} not found", entity="user", entity_id=user_id)
        return user

    @staticmethod
    async def _item_orders(db: AsyncSession, item_id: int) -> List[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.item_id == item_id)
            .order_by(Order.created_at, Order.id)
        )
        return list(result.scalars().all())

    async def _reproject(self, db: AsyncSession, item: Item) -> bool:
        """Recompute the item's status fields from its orders."""
        orders = await self._item_orders(db, item.id)
        return apply_item_state(item, project_item_state(orders, self.ttl))

    async def _close_open_orders(self, db: AsyncSession, item: Item, reason: str) -> int:
        orders = await self._item_orders(db, item.id)
        closed = 0
        for order in orders:
            if order.status in OPEN_ORDER_STATUSES:
                order.status = OrderStatus.CANCELLED
                order.update_reason = reason
                closed += 1
        return closed

    async def _expire_if_lapsed(self, db: AsyncSession, item: Item, now: datetime) -> bool:
        if not item.is_reservation_lapsed(now):
            return False
        holder = item.reserved_by_id
        await self._close_open_orders(db, item, OrderReason.EXPIRED)
        await self._reproject(db, item)
        logger.info("Reservation on item %s by user %s lapsed, released", item.id, holder)
        return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def book(self, item_id: int, user_id: int) -> Order:
        """
        Reserve an AVAILABLE item for `user_id` until now + TTL.

        Raises:
            NotFoundError: item or user does not exist
            ForbiddenError: the user owns the item
            InvalidStateError: the item is not AVAILABLE
        """
        async def work(db: AsyncSession) -> Order:
            now = self._clock()
            item = await self._lock_item(db, item_id)
            await self._require_user(db, user_id)

            if item.owner_id == user_id:
                raise ForbiddenError(
                    "You cannot book your own item",
                    details={"item_id": item_id, "user_id": user_id},
                )

            await self._expire_if_lapsed(db, item, now)

            if item.status != ItemStatus.AVAILABLE:
                raise InvalidStateError(
                    "Item is not available for booking",
                    item_id=item_id,
                    status=ItemStatus(item.status).value,
                )

            order = Order(
                item_id=item.id,
                user_id=user_id,
                quantity=1,
                total_amount=to_money(item.price),
                status=OrderStatus.CONFIRMED,
                created_at=now,
                expires_at=now + self.ttl,
            )
            db.add(order)
            await self._reproject(db, item)
            return order

        order = await self._run_in_transaction("book", item_id, work)
        logger.info(
            "Item %s booked by user %s until %s (order %s)",
            item_id, user_id, order.expires_at.isoformat(), order.id,
        )
        return order

    async def purchase(self, item_id: int, user_id: int) -> Order:
        """
        Sell the item to `user_id`, paying from their balance.

        The debit, the order and the status change commit together or not
        at all. A buyer's own open booking is closed as converted_to_sale.

        Raises:
            NotFoundError: item or user does not exist
            ForbiddenError: the user owns the item
            AlreadySoldError: the item is SOLD
            ReservedByOtherError: an unexpired booking belongs to someone else
            InsufficientFundsError: balance is below the item price
        """
        async def work(db: AsyncSession) -> Order:
            now = self._clock()
            item = await self._lock_item(db, item_id)
            await self._require_user(db, user_id)

            if item.owner_id == user_id:
                raise ForbiddenError(
                    "You cannot purchase your own item",
                    details={"item_id": item_id, "user_id": user_id},
                )

            if item.status == ItemStatus.SOLD:
                raise AlreadySoldError("Item already sold", item_id=item_id, status=ItemStatus.SOLD.value)

            await self._expire_if_lapsed(db, item, now)

            if item.status == ItemStatus.BOOKED and item.reserved_by_id != user_id:
                raise ReservedByOtherError(
                    "Item is booked by another user",
                    details={"item_id": item_id, "reserved_until": item.reservation_expiry.isoformat()},
                )

            price = to_money(item.price)
            if not await BalanceService.apply_debit(db, user_id, price):
                available = await BalanceService.read_balance(db, user_id)
                raise InsufficientFundsError(
                    "Insufficient funds for this purchase",
                    required=price,
                    available=available,
                )

            await self._close_open_orders(db, item, OrderReason.CONVERTED_TO_SALE)

            order = Order(
                item_id=item.id,
                user_id=user_id,
                quantity=1,
                total_amount=price,
                status=OrderStatus.COMPLETED,
                created_at=now,
                completed_at=now,
            )
            db.add(order)
            await self._reproject(db, item)
            return order

        order = await self._run_in_transaction("purchase", item_id, work)
        logger.info(
            "Item %s sold to user %s for %s (order %s)",
            item_id, user_id, order.total_amount, order.id,
        )
        return order

    async def cancel_booking(
        self,
        item_id: int,
        user_id: int,
        capabilities: Iterable[Capability] = (),
    ) -> None:
        """
        Release a BOOKED item and cancel its open orders.

        Allowed for the reserving user, the item owner, or a caller granted
        Capability.CANCEL_ANY_BOOKING.

        Raises:
            NotFoundError: item or user does not exist
            InvalidStateError: the item is not BOOKED
            ForbiddenError: the caller holds none of the allowed capabilities
        """
        granted = frozenset(capabilities)

        async def work(db: AsyncSession) -> int:
            item = await self._lock_item(db, item_id)
            await self._require_user(db, user_id)

            if item.status != ItemStatus.BOOKED:
                raise InvalidStateError(
                    "Item is not booked",
                    item_id=item_id,
                    status=ItemStatus(item.status).value,
                )

            caps = capabilities_for_item(user_id, item.owner_id, item.reserved_by_id, granted)
            if not can_cancel_booking(caps):
                raise ForbiddenError(
                    "Not allowed to cancel this booking",
                    details={"item_id": item_id, "user_id": user_id},
                )

            holder = item.reserved_by_id
            await self._close_open_orders(db, item, OrderReason.CANCELLED)
            await self._reproject(db, item)
            return holder

        holder = await self._run_in_transaction("cancel_booking", item_id, work)
        logger.info("Booking on item %s by user %s cancelled by user %s", item_id, holder, user_id)

    async def reconcile(self, item_id: int) -> bool:
        """
        Re-derive the item's status from its order history.

        Returns True when the stored status disagreed and was repaired.
        """
        async def work(db: AsyncSession):
            item = await self._lock_item(db, item_id)
            before = read_item_state(item)
            changed = await self._reproject(db, item)
            return changed, before, read_item_state(item)

        changed, before, after = await self._run_in_transaction("reconcile", item_id, work)
        if changed:
            logger.warning(
                "Item %s status drift repaired: %s -> %s",
                item_id, before.status.value, after.status.value,
            )
        return changed

    async def expire_reservation(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """
        Time-triggered cancel: release the item and cancel its booking order
        if the reservation ended before `now`. Returns False when the item is
        no longer BOOKED or its hold has not run out.
        """
        async def work(db: AsyncSession) -> bool:
            item = await self._lock_item(db, item_id)
            return await self._expire_if_lapsed(db, item, now or self._clock())

        return await self._run_in_transaction("expire_reservation", item_id, work)

    async def update_order_status(
        self,
        order_id: int,
        status: OrderStatus,
        reason: str = OrderReason.ADMIN,
    ) -> Order:
        """
        Administrative order edit. The item is re-projected in the same
        transaction so the two records cannot drift apart.

        Only the item's latest order may be moved to an open or completed
        status; earlier orders can only be cancelled. Money follows the sale:
        completing an order debits its user, and taking a completed order
        back refunds `total_amount` to the buyer.

        Raises:
            NotFoundError: order does not exist
            InvalidStateError: the order is not the item's latest and the
                new status is not CANCELLED
            InsufficientFundsError: completing the order needs more than the
                user's balance
        """
        status = OrderStatus(status)
        item_id = await self._order_item_id(order_id)

        async def work(db: AsyncSession) -> Order:
            now = self._clock()
            item = await self._lock_item(db, item_id)
            order = await db.get(Order, order_id)
            if order is None or order.item_id != item_id:
                raise NotFoundError(f"Order {order_id} not found", entity="order", entity_id=order_id)

            previous = OrderStatus(order.status)
            if previous == status:
                return order

            latest = latest_order(await self._item_orders(db, item_id))
            if status != OrderStatus.CANCELLED and latest.id != order.id:
                raise InvalidStateError(
                    f"Order {order_id} is superseded by order {latest.id}; it can only be cancelled",
                    item_id=item_id,
                    status=ItemStatus(item.status).value,
                    details={"order_id": order_id, "latest_order_id": latest.id},
                )

            if status == OrderStatus.COMPLETED:
                await self._charge(db, order)
            elif previous == OrderStatus.COMPLETED:
                await self._refund(db, order)

            order.status = status
            order.update_reason = reason
            order.completed_at = now if status == OrderStatus.COMPLETED else None
            if status in OPEN_ORDER_STATUSES and order.expires_at is None:
                order.expires_at = now + self.ttl

            await self._reproject(db, item)
            logger.info(
                "Order %s status %s -> %s (item %s now %s)",
                order_id, previous.value, status.value, item_id, ItemStatus(item.status).value,
            )
            return order

        return await self._run_in_transaction("update_order_status", item_id, work)

    async def delete_order(self, order_id: int) -> None:
        """
        Remove an order from the ledger and re-project its item.
        Deleting a completed sale refunds the buyer.
        """
        item_id = await self._order_item_id(order_id)

        async def work(db: AsyncSession) -> None:
            item = await self._lock_item(db, item_id)
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", entity="order", entity_id=order_id)
            if order.status == OrderStatus.CONFIRMED:
                logger.warning("Deleting confirmed order %s for item %s", order_id, item_id)
            elif order.status == OrderStatus.COMPLETED:
                await self._refund(db, order)
            await db.delete(order)
            await db.flush()
            await self._reproject(db, item)

        await self._run_in_transaction("delete_order", item_id, work)
        logger.info("Order %s deleted (item %s)", order_id, item_id)

    @staticmethod
    async def _charge(db: AsyncSession, order: Order) -> None:
        amount = to_money(order.total_amount)
        if not await BalanceService.apply_debit(db, order.user_id, amount):
            available = await BalanceService.read_balance(db, order.user_id)
            raise InsufficientFundsError(
                "Insufficient funds to complete this order",
                required=amount,
                available=available,
            )

    @staticmethod
    async def _refund(db: AsyncSession, order: Order) -> None:
        amount = to_money(order.total_amount)
        if amount > 0:
            await BalanceService.apply_credit(db, order.user_id, amount)
            logger.info("Refunded %s to user %s for order %s", amount, order.user_id, order.id)

    async def _order_item_id(self, order_id: int) -> int:
        async with self._session_factory() as db:
            result = await db.execute(select(Order.item_id).where(Order.id == order_id))
            item_id = result.scalar_one_or_none()
        if item_id is None:
            raise NotFoundError(f"Order {order_id} not found", entity="order", entity_id=order_id)
        return item_id
