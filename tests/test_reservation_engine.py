"""
Tests for ReservationEngine.

Covers the item state machine (AVAILABLE -> BOOKED -> SOLD), the order ledger
kept alongside it, and the balance debit made on purchase.
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update
from sqlalchemy.orm.exc import StaleDataError

from storefront.core.exceptions import (
    AlreadySoldError,
    ConcurrencyConflictError,
    ForbiddenError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
    ReservedByOtherError,
)
from storefront.core.permissions import Capability
from storefront.models import ItemStatus, Order, OrderReason, OrderStatus
from storefront.services import ReservationEngine
from storefront.services.item_projection import invariant_violations

TTL = timedelta(hours=24)


async def setup_listing(store, price="100.00", buyer_balance="500.00"):
    owner = await store.add_user(name="Seller")
    buyer = await store.add_user(balance=buyer_balance, name="Buyer")
    item = await store.add_item(owner, price=price)
    return owner, buyer, item


class TestBook:

    @pytest.mark.asyncio
    async def test_book_available_item(self, store, engine, clock):
        owner, buyer, item = await setup_listing(store)

        order = await engine.book(item.id, buyer.id)

        assert order.status == OrderStatus.CONFIRMED
        assert order.total_amount == Decimal("100.00")
        assert order.expires_at == clock.now + TTL

        booked = await store.item(item.id)
        assert booked.status == ItemStatus.BOOKED
        assert booked.reserved_by_id == buyer.id
        assert booked.reservation_expiry == clock.now + TTL
        assert booked.buyer_id is None
        assert invariant_violations(booked) == []

    @pytest.mark.asyncio
    async def test_book_does_not_touch_balance(self, store, engine):
        owner, buyer, item = await setup_listing(store)

        await engine.book(item.id, buyer.id)

        assert await store.balance(buyer.id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_book_already_booked_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        other = await store.add_user()
        await engine.book(item.id, buyer.id)

        with pytest.raises(InvalidStateError) as exc_info:
            await engine.book(item.id, other.id)

        assert exc_info.value.details["status"] == "BOOKED"
        assert len(await store.orders(item.id)) == 1

    @pytest.mark.asyncio
    async def test_book_sold_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        other = await store.add_user()
        await engine.purchase(item.id, buyer.id)

        with pytest.raises(InvalidStateError):
            await engine.book(item.id, other.id)

    @pytest.mark.asyncio
    async def test_book_unknown_item(self, store, engine):
        buyer = await store.add_user()

        with pytest.raises(NotFoundError):
            await engine.book(4242, buyer.id)

    @pytest.mark.asyncio
    async def test_book_unknown_user(self, store, engine):
        owner, buyer, item = await setup_listing(store)

        with pytest.raises(NotFoundError):
            await engine.book(item.id, 4242)

        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_book_lapsed_booking_is_released_first(self, store, engine, clock):
        owner, buyer, item = await setup_listing(store)
        other = await store.add_user()
        await engine.book(item.id, buyer.id)

        clock.advance(TTL + timedelta(minutes=1))
        await engine.book(item.id, other.id)

        rebooked = await store.item(item.id)
        assert rebooked.reserved_by_id == other.id

        first, second = await store.orders(item.id)
        assert first.status == OrderStatus.CANCELLED
        assert first.update_reason == OrderReason.EXPIRED
        assert second.status == OrderStatus.CONFIRMED


class TestSelfDealing:

    @pytest.mark.asyncio
    async def test_owner_cannot_book_available_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)

        with pytest.raises(ForbiddenError):
            await engine.book(item.id, owner.id)

        assert await store.orders(item.id) == []

    @pytest.mark.asyncio
    async def test_owner_gets_forbidden_even_when_booked(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        await engine.book(item.id, buyer.id)

        with pytest.raises(ForbiddenError):
            await engine.book(item.id, owner.id)

    @pytest.mark.asyncio
    async def test_owner_gets_forbidden_even_when_sold(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        await engine.purchase(item.id, buyer.id)

        with pytest.raises(ForbiddenError):
            await engine.book(item.id, owner.id)
        with pytest.raises(ForbiddenError):
            await engine.purchase(item.id, owner.id)

    @pytest.mark.asyncio
    async def test_owner_cannot_purchase(self, store, engine):
        owner = await store.add_user(balance="1000.00")
        item = await store.add_item(owner)

        with pytest.raises(ForbiddenError):
            await engine.purchase(item.id, owner.id)

        assert await store.balance(owner.id) == Decimal("1000.00")


class TestPurchase:

    @pytest.mark.asyncio
    async def test_purchase_debits_and_sells(self, store, engine):
        owner, buyer, item = await setup_listing(store, price="100.00", buyer_balance="150.00")

        order = await engine.purchase(item.id, buyer.id)

        assert order.status == OrderStatus.COMPLETED
        assert order.total_amount == Decimal("100.00")
        assert order.completed_at is not None
        assert await store.balance(buyer.id) == Decimal("50.00")

        sold = await store.item(item.id)
        assert sold.status == ItemStatus.SOLD
        assert sold.buyer_id == buyer.id
        assert sold.reserved_by_id is None
        assert sold.reservation_expiry is None

        orders = await store.orders(item.id)
        assert [o.status for o in orders] == [OrderStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_book_then_purchase_converts_booking(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)

        sale = await engine.purchase(item.id, buyer.id)

        orders = {o.id: o for o in await store.orders(item.id)}
        assert orders[booking.id].status == OrderStatus.CANCELLED
        assert orders[booking.id].update_reason == OrderReason.CONVERTED_TO_SALE
        assert orders[sale.id].status == OrderStatus.COMPLETED
        assert (await store.item(item.id)).buyer_id == buyer.id

    @pytest.mark.asyncio
    async def test_purchase_while_booked_by_other(self, store, engine):
        owner, holder, item = await setup_listing(store)
        rival = await store.add_user(balance="500.00")
        await engine.book(item.id, holder.id)

        with pytest.raises(ReservedByOtherError):
            await engine.purchase(item.id, rival.id)

        assert await store.balance(rival.id) == Decimal("500.00")
        current = await store.item(item.id)
        assert current.status == ItemStatus.BOOKED
        assert current.reserved_by_id == holder.id

    @pytest.mark.asyncio
    async def test_purchase_after_booking_lapsed(self, store, engine, clock):
        owner, holder, item = await setup_listing(store)
        rival = await store.add_user(balance="500.00")
        booking = await engine.book(item.id, holder.id)

        clock.advance(TTL + timedelta(seconds=1))
        await engine.purchase(item.id, rival.id)

        orders = {o.id: o for o in await store.orders(item.id)}
        assert orders[booking.id].status == OrderStatus.CANCELLED
        assert orders[booking.id].update_reason == OrderReason.EXPIRED
        assert (await store.item(item.id)).buyer_id == rival.id

    @pytest.mark.asyncio
    async def test_purchase_sold_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        other = await store.add_user(balance="500.00")
        await engine.purchase(item.id, buyer.id)

        with pytest.raises(AlreadySoldError):
            await engine.purchase(item.id, other.id)

        assert await store.balance(other.id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_insufficient_funds_changes_nothing(self, store, engine):
        owner, buyer, item = await setup_listing(store, price="100.00", buyer_balance="50.00")

        with pytest.raises(InsufficientFundsError) as exc_info:
            await engine.purchase(item.id, buyer.id)

        assert exc_info.value.details["required"] == "100.00"
        assert exc_info.value.details["available"] == "50.00"
        assert await store.balance(buyer.id) == Decimal("50.00")
        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE
        assert await store.orders(item.id) == []

    @pytest.mark.asyncio
    async def test_insufficient_funds_keeps_booking(self, store, engine):
        owner, buyer, item = await setup_listing(store, price="100.00", buyer_balance="50.00")
        booking = await engine.book(item.id, buyer.id)

        with pytest.raises(InsufficientFundsError):
            await engine.purchase(item.id, buyer.id)

        current = await store.item(item.id)
        assert current.status == ItemStatus.BOOKED
        assert current.reserved_by_id == buyer.id
        (order,) = await store.orders(item.id)
        assert order.id == booking.id
        assert order.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_purchase_free_item_with_empty_balance(self, store, engine):
        owner, buyer, item = await setup_listing(store, price="0.00", buyer_balance="0.00")

        await engine.purchase(item.id, buyer.id)

        assert (await store.item(item.id)).status == ItemStatus.SOLD


class TestCancelBooking:

    @pytest.mark.asyncio
    async def test_holder_cancels(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)

        await engine.cancel_booking(item.id, buyer.id)

        released = await store.item(item.id)
        assert released.status == ItemStatus.AVAILABLE
        assert released.reserved_by_id is None
        assert released.reservation_expiry is None
        (order,) = await store.orders(item.id)
        assert order.id == booking.id
        assert order.status == OrderStatus.CANCELLED
        assert order.update_reason == OrderReason.CANCELLED

    @pytest.mark.asyncio
    async def test_owner_cancels(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        await engine.book(item.id, buyer.id)

        await engine.cancel_booking(item.id, owner.id)

        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_stranger_forbidden(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        stranger = await store.add_user()
        await engine.book(item.id, buyer.id)

        with pytest.raises(ForbiddenError):
            await engine.cancel_booking(item.id, stranger.id)

        assert (await store.item(item.id)).status == ItemStatus.BOOKED

    @pytest.mark.asyncio
    async def test_cancel_any_capability(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        staff = await store.add_user(is_admin=True)
        await engine.book(item.id, buyer.id)

        await engine.cancel_booking(item.id, staff.id, capabilities={Capability.CANCEL_ANY_BOOKING})

        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_cancel_available_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)

        with pytest.raises(InvalidStateError):
            await engine.cancel_booking(item.id, buyer.id)

    @pytest.mark.asyncio
    async def test_cancel_sold_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        await engine.purchase(item.id, buyer.id)

        with pytest.raises(InvalidStateError):
            await engine.cancel_booking(item.id, buyer.id)

    @pytest.mark.asyncio
    async def test_item_can_be_rebooked_after_cancel(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        other = await store.add_user()
        await engine.book(item.id, buyer.id)
        await engine.cancel_booking(item.id, buyer.id)

        await engine.book(item.id, other.id)

        assert (await store.item(item.id)).reserved_by_id == other.id


class TestExpireReservation:

    @pytest.mark.asyncio
    async def test_not_expired_yet(self, store, engine, clock):
        owner, buyer, item = await setup_listing(store)
        await engine.book(item.id, buyer.id)

        assert await engine.expire_reservation(item.id, now=clock.now + TTL - timedelta(seconds=1)) is False
        assert (await store.item(item.id)).status == ItemStatus.BOOKED

    @pytest.mark.asyncio
    async def test_expired(self, store, engine, clock):
        owner, buyer, item = await setup_listing(store)
        await engine.book(item.id, buyer.id)

        assert await engine.expire_reservation(item.id, now=clock.now + TTL + timedelta(seconds=1)) is True

        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE
        (order,) = await store.orders(item.id)
        assert order.status == OrderStatus.CANCELLED
        assert order.update_reason == OrderReason.EXPIRED

    @pytest.mark.asyncio
    async def test_available_item_is_a_noop(self, store, engine, clock):
        owner, buyer, item = await setup_listing(store)

        assert await engine.expire_reservation(item.id, now=clock.now + timedelta(days=30)) is False


class TestReconcile:

    @pytest.mark.asyncio
    async def test_in_sync_item_is_untouched(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        await engine.book(item.id, buyer.id)

        assert await engine.reconcile(item.id) is False

    @pytest.mark.asyncio
    async def test_repairs_drift_from_out_of_band_order_edit(self, store, engine, session_factory):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)

        # Simulate a write that bypassed the engine
        async with session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(Order).where(Order.id == booking.id).values(status=OrderStatus.CANCELLED)
                )

        assert await engine.reconcile(item.id) is True
        repaired = await store.item(item.id)
        assert repaired.status == ItemStatus.AVAILABLE
        assert invariant_violations(repaired) == []

        assert await engine.reconcile(item.id) is False

    @pytest.mark.asyncio
    async def test_unknown_item(self, engine):
        with pytest.raises(NotFoundError):
            await engine.reconcile(4242)


class TestAdminOrderEdits:

    @pytest.mark.asyncio
    async def test_completing_booking_sells_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)

        order = await engine.update_order_status(booking.id, OrderStatus.COMPLETED)

        assert order.completed_at is not None
        assert order.update_reason == OrderReason.ADMIN
        sold = await store.item(item.id)
        assert sold.status == ItemStatus.SOLD
        assert sold.buyer_id == buyer.id
        assert invariant_violations(sold) == []
        assert await store.balance(buyer.id) == Decimal("400.00")

    @pytest.mark.asyncio
    async def test_cancelling_sale_releases_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        sale = await engine.purchase(item.id, buyer.id)

        order = await engine.update_order_status(sale.id, OrderStatus.CANCELLED)

        assert order.completed_at is None
        released = await store.item(item.id)
        assert released.status == ItemStatus.AVAILABLE
        assert released.buyer_id is None
        assert await store.balance(buyer.id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_reopening_order_books_item(self, store, engine, clock):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)
        await engine.cancel_booking(item.id, buyer.id)

        await engine.update_order_status(booking.id, OrderStatus.PENDING)

        booked = await store.item(item.id)
        assert booked.status == ItemStatus.BOOKED
        assert booked.reserved_by_id == buyer.id

    @pytest.mark.asyncio
    async def test_superseded_order_cannot_be_reopened(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)
        sale = await engine.purchase(item.id, buyer.id)

        for status in (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.COMPLETED):
            with pytest.raises(InvalidStateError) as exc_info:
                await engine.update_order_status(booking.id, status)
            assert exc_info.value.details["latest_order_id"] == sale.id

        # Taking the sale back leaves the old booking superseded and closed
        await engine.update_order_status(sale.id, OrderStatus.CANCELLED)
        with pytest.raises(InvalidStateError):
            await engine.update_order_status(booking.id, OrderStatus.CONFIRMED)

        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE
        statuses = {o.id: o.status for o in await store.orders(item.id)}
        assert statuses == {booking.id: OrderStatus.CANCELLED, sale.id: OrderStatus.CANCELLED}

    @pytest.mark.asyncio
    async def test_completing_without_funds_changes_nothing(self, store, engine):
        owner, buyer, item = await setup_listing(store, price="100.00", buyer_balance="50.00")
        booking = await engine.book(item.id, buyer.id)

        with pytest.raises(InsufficientFundsError):
            await engine.update_order_status(booking.id, OrderStatus.COMPLETED)

        assert await store.balance(buyer.id) == Decimal("50.00")
        assert (await store.item(item.id)).status == ItemStatus.BOOKED
        (order,) = await store.orders(item.id)
        assert order.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_same_status_is_a_noop(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)

        order = await engine.update_order_status(booking.id, OrderStatus.CONFIRMED)

        assert order.update_reason is None

    @pytest.mark.asyncio
    async def test_update_unknown_order(self, engine):
        with pytest.raises(NotFoundError):
            await engine.update_order_status(4242, OrderStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_delete_booking_order_releases_item(self, store, engine):
        owner, buyer, item = await setup_listing(store)
        booking = await engine.book(item.id, buyer.id)

        await engine.delete_order(booking.id)

        assert await store.orders(item.id) == []
        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_delete_latest_order_falls_back_to_previous(self, store, engine, clock):
        owner, buyer, item = await setup_listing(store)
        other = await store.add_user(balance="500.00")
        await engine.book(item.id, buyer.id)
        await engine.cancel_booking(item.id, buyer.id)
        clock.advance(timedelta(minutes=5))
        sale = await engine.purchase(item.id, other.id)

        await engine.delete_order(sale.id)

        # The cancelled booking is now the latest order
        assert (await store.item(item.id)).status == ItemStatus.AVAILABLE
        assert await store.balance(other.id) == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_delete_unknown_order(self, engine):
        with pytest.raises(NotFoundError):
            await engine.delete_order(4242)


class TestConflictRetries:

    @pytest.mark.asyncio
    async def test_retries_after_version_conflict(self, store, session_factory, clock, monkeypatch):
        owner, buyer, item = await setup_listing(store)
        engine = ReservationEngine(session_factory=session_factory, ttl=TTL, clock=clock, max_attempts=3)
        reproject = engine._reproject
        calls = []

        async def conflict_once(db, locked_item):
            calls.append(locked_item.id)
            if len(calls) == 1:
                raise StaleDataError("items row was updated by another transaction")
            return await reproject(db, locked_item)

        monkeypatch.setattr(engine, "_reproject", conflict_once)

        await engine.book(item.id, buyer.id)

        assert len(calls) == 2
        assert (await store.item(item.id)).reserved_by_id == buyer.id
        assert len(await store.orders(item.id)) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, store, session_factory, clock, monkeypatch):
        owner, buyer, item = await setup_listing(store)
        engine = ReservationEngine(session_factory=session_factory, ttl=TTL, clock=clock, max_attempts=2)
        always_conflict = AsyncMock(side_effect=StaleDataError("items row was updated by another transaction"))
        monkeypatch.setattr(engine, "_reproject", always_conflict)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await engine.purchase(item.id, buyer.id)

        assert exc_info.value.details == {"item_id": item.id, "operation": "purchase", "attempts": 2}
        assert always_conflict.await_count == 2

        untouched = await store.item(item.id)
        assert untouched.status == ItemStatus.AVAILABLE
        assert untouched.version == 1
        assert await store.orders(item.id) == []
        assert await store.balance(buyer.id) == Decimal("500.00")


@pytest.mark.asyncio
async def test_book_purchase_end_to_end(store, engine):
    """Book, then buy with a 150.00 balance at a 100.00 price."""
    owner, buyer, item = await setup_listing(store, price="100.00", buyer_balance="150.00")

    await engine.book(item.id, buyer.id)
    assert (await store.item(item.id)).status == ItemStatus.BOOKED

    await engine.purchase(item.id, buyer.id)

    sold = await store.item(item.id)
    assert sold.status == ItemStatus.SOLD
    assert sold.buyer_id == buyer.id
    assert await store.balance(buyer.id) == Decimal("50.00")
    completed = [o for o in await store.orders(item.id) if o.status == OrderStatus.COMPLETED]
    assert len(completed) == 1
    assert completed[0].total_amount == Decimal("100.00")
