"""
Pytest configuration and fixtures for Music Store tests.
"""
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests-only"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RESERVATION_SWEEP_ENABLED"] = "false"

from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from storefront.core.database import Base  # noqa: E402
from storefront.models import Item, ItemStatus, Order, User  # noqa: E402
from storefront.services import BalanceService, ReservationEngine  # noqa: E402

TTL = timedelta(hours=24)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


class Store:
    """Seeds users and items straight into the test database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._seq = 0

    async def add_user(self, balance="0.00", is_admin=False, name=None) -> User:
        self._seq += 1
        async with self.session_factory() as db:
            async with db.begin():
                user = User(
                    email=f"user{self._seq}@example.com",
                    name=name or f"User {self._seq}",
                    balance=Decimal(balance),
                    is_admin=is_admin,
                )
                db.add(user)
        return user

    async def add_item(self, owner: User, price="100.00", name="Fender Stratocaster") -> Item:
        async with self.session_factory() as db:
            async with db.begin():
                item = Item(owner_id=owner.id, name=name, price=Decimal(price), status=ItemStatus.AVAILABLE)
                db.add(item)
        return item

    async def item(self, item_id: int) -> Item:
        async with self.session_factory() as db:
            return await db.get(Item, item_id)

    async def orders(self, item_id: int) -> list:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order).where(Order.item_id == item_id).order_by(Order.created_at, Order.id)
            )
            return list(result.scalars().all())

    async def balance(self, user_id: int) -> Decimal:
        async with self.session_factory() as db:
            return await BalanceService.read_balance(db, user_id)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'store.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory)


@pytest.fixture
def engine(session_factory, clock) -> ReservationEngine:
    return ReservationEngine(session_factory=session_factory, ttl=TTL, clock=clock)


@pytest.fixture
def balances(session_factory) -> BalanceService:
    return BalanceService(session_factory=session_factory)
