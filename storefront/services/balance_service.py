"""
BalanceService - prepaid balance ledger

Every debit is a single conditional UPDATE (balance >= amount), so the
sufficiency check and the write cannot be separated by another transaction.
The apply_* variants join a caller's transaction (used by purchase); the
instance methods open their own.
"""
import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.database import AsyncSessionLocal
from storefront.core.exceptions import InvalidArgumentError, NotFoundError
from storefront.core.utils import to_money
from storefront.models import User

logger = logging.getLogger(__name__)


class BalanceService:
    """Credits, debits and reads a user's internal balance."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    @staticmethod
    async def read_balance(db: AsyncSession, user_id: int) -> Decimal:
        result = await db.execute(select(User.balance).where(User.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise NotFoundError(f"User {user_id} not found", entity="user", entity_id=user_id)
        return to_money(balance)

    @staticmethod
    async def apply_credit(db: AsyncSession, user_id: int, amount) -> Decimal:
        """Add funds inside the caller's transaction. Returns the new balance."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidArgumentError("Credit amount must be positive", details={"amount": str(amount)})

        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance=User.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"User {user_id} not found", entity="user", entity_id=user_id)

        logger.info("Credited %s to user %s", amount, user_id)
        return await BalanceService.read_balance(db, user_id)

    @staticmethod
    async def apply_debit(db: AsyncSession, user_id: int, amount) -> bool:
        """
        Withdraw funds inside the caller's transaction.

        Returns False (and changes nothing) when the balance does not cover
        the amount. A zero amount always succeeds for an existing user.
        """
        amount = to_money(amount)
        if amount < 0:
            raise InvalidArgumentError("Debit amount must not be negative", details={"amount": str(amount)})

        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.balance >= amount)
            .values(balance=User.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("Debited %s from user %s", amount, user_id)
            return True

        # Distinguish "no such user" from "not enough money"
        balance = await BalanceService.read_balance(db, user_id)
        logger.info("Debit of %s refused for user %s (balance %s)", amount, user_id, balance)
        return False

    async def credit(self, user_id: int, amount) -> Decimal:
        async with self._session_factory() as db:
            async with db.begin():
                return await self.apply_credit(db, user_id, amount)

    async def top_up(self, user_id: int, amount) -> Decimal:
        """Caller-facing top-up of the user's own balance."""
        return await self.credit(user_id, amount)

    async def debit(self, user_id: int, amount) -> bool:
        async with self._session_factory() as db:
            async with db.begin():
                return await self.apply_debit(db, user_id, amount)

    async def get_balance(self, user_id: int) -> Decimal:
        async with self._session_factory() as db:
            return await self.read_balance(db, user_id)
