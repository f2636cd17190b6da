"""
Reservation Expiry Sweeper

Releases BOOKED items whose reservation ended. Each release cancels the
booking order and frees the item in one transaction via
ReservationEngine.expire_reservation, so the order ledger and the item status
never disagree after a sweep.

Should be run every few minutes by the scheduler in storefront.jobs.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, select

from storefront.core.database import AsyncSessionLocal
from storefront.core.exceptions import StorefrontError
from storefront.core.utils import utcnow
from storefront.models import Item, ItemStatus
from storefront.services.reservation_engine import ReservationEngine

logger = logging.getLogger(__name__)


async def find_expired_item_ids(session_factory, now: datetime, limit: Optional[int] = None) -> list:
    query = (
        select(Item.id)
        .where(Item.status == ItemStatus.BOOKED, Item.reservation_expiry < now)
        .order_by(Item.reservation_expiry)
    )
    if limit:
        query = query.limit(limit)
    async with session_factory() as db:
        result = await db.execute(query)
        return list(result.scalars().all())


async def release_expired_reservations(
    now: Optional[datetime] = None,
    engine: Optional[ReservationEngine] = None,
    batch_limit: Optional[int] = None,
) -> dict:
    """
    Release every reservation that expired before `now`.

    Items are processed one transaction each; a failure on one item is logged
    and counted and does not stop the sweep.

    Returns:
        dict with count of released reservations, candidates seen, and errors
    """
    engine = engine or ReservationEngine()
    now = now or engine.now()
    stats = {
        "candidates": 0,
        "reservations_released": 0,
        "errors": 0,
    }

    item_ids = await find_expired_item_ids(engine.session_factory, now, batch_limit)
    stats["candidates"] = len(item_ids)

    for item_id in item_ids:
        try:
            if await engine.expire_reservation(item_id, now=now):
                stats["reservations_released"] += 1
        except StorefrontError as e:
            logger.error("Could not release reservation on item %s: %s", item_id, e.message)
            stats["errors"] += 1
        except Exception as e:
            logger.error("Error releasing reservation on item %s: %s", item_id, e, exc_info=True)
            stats["errors"] += 1

    if stats["reservations_released"] > 0:
        logger.info(
            "Released %d expired reservations (%d candidates, %d errors)",
            stats["reservations_released"], stats["candidates"], stats["errors"],
        )
    else:
        logger.debug("No expired reservations to clean up")

    return stats


async def get_reservation_stats(now: Optional[datetime] = None, session_factory=None) -> dict:
    """
    Get current reservation statistics for monitoring.
    """
    now = now or utcnow()
    soon = now + timedelta(hours=1)
    session_factory = session_factory or AsyncSessionLocal

    async with session_factory() as db:
        booked = Item.status == ItemStatus.BOOKED
        stmt = select(
            func.count(Item.id).filter(booked),
            func.count(Item.id).filter(and_(booked, Item.reservation_expiry < now)),
            func.count(Item.id).filter(
                and_(booked, Item.reservation_expiry >= now, Item.reservation_expiry <= soon)
            ),
        )
        total, expired, expiring = (await db.execute(stmt)).one()

    total = int(total or 0)
    expired = int(expired or 0)
    return {
        "booked_items": total,
        "active_reservations": total - expired,
        "expired_reservations": expired,
        "expiring_within_1h": int(expiring or 0),
    }
