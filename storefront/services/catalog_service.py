"""
CatalogService - item creation, lookup and removal

Items are created AVAILABLE and never deleted while any order references
them; the order history has to be removed first.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select

from storefront.core.database import AsyncSessionLocal
from storefront.core.exceptions import ForbiddenError, InvalidArgumentError, InvalidStateError, NotFoundError
from storefront.core.permissions import Capability
from storefront.core.utils import to_money
from storefront.models import Item, ItemStatus, Order, User

logger = logging.getLogger(__name__)


class CatalogService:

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def create_item(
        self,
        owner_id: int,
        name: str,
        price,
        description: Optional[str] = None,
    ) -> Item:
        price = to_money(price)
        if price < Decimal("0"):
            raise InvalidArgumentError("Price must not be negative", details={"price": str(price)})
        if not name or not name.strip():
            raise InvalidArgumentError("Item name is required")

        async with self._session_factory() as db:
            async with db.begin():
                owner = await db.get(User, owner_id)
                if owner is None:
                    raise NotFoundError(f"User {owner_id} not found", entity="user", entity_id=owner_id)
                item = Item(
                    owner_id=owner_id,
                    name=name.strip(),
                    description=description,
                    price=price,
                    status=ItemStatus.AVAILABLE,
                )
                db.add(item)
                await db.flush()

        logger.info("Item %s created by user %s at %s", item.id, owner_id, price)
        return item

    async def get_item(self, item_id: int) -> Item:
        async with self._session_factory() as db:
            item = await db.get(Item, item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found", entity="item", entity_id=item_id)
        return item

    async def list_items(
        self,
        status: Optional[ItemStatus] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Item], int]:
        query = select(Item)
        count_query = select(func.count(Item.id))
        if status is not None:
            query = query.where(Item.status == status)
            count_query = count_query.where(Item.status == status)

        async with self._session_factory() as db:
            total = (await db.execute(count_query)).scalar() or 0
            result = await db.execute(
                query.order_by(Item.created_at.desc(), Item.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            items = list(result.scalars().all())
        return items, total

    async def delete_item(self, item_id: int, user_id: int, capabilities=()) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(select(Item).where(Item.id == item_id).with_for_update())
                item = result.scalar_one_or_none()
                if item is None:
                    raise NotFoundError(f"Item {item_id} not found", entity="item", entity_id=item_id)
                if item.owner_id != user_id and Capability.MANAGE_ITEMS not in set(capabilities):
                    raise ForbiddenError("Only the owner may remove this item", details={"item_id": item_id})

                referenced = (await db.execute(
                    select(func.count(Order.id)).where(Order.item_id == item_id)
                )).scalar() or 0
                if referenced:
                    raise InvalidStateError(
                        f"Item has {referenced} order(s); remove them first",
                        item_id=item_id,
                        status=ItemStatus(item.status).value,
                    )
                await db.delete(item)

        logger.info("Item %s deleted by user %s", item_id, user_id)
