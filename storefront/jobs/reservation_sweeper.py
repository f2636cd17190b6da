"""
Reservation sweep scheduler

Runs release_expired_reservations on a fixed interval and keeps a heartbeat
for the health endpoint. Started from the FastAPI lifespan when
RESERVATION_SWEEP_ENABLED, or standalone:

    python -m storefront.jobs.reservation_sweeper [--once]
"""
import argparse
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from storefront.core.config import settings
from storefront.services.expiry_sweeper import get_reservation_stats, release_expired_reservations
from storefront.services.reservation_engine import ReservationEngine

logger = logging.getLogger(__name__)

sweep_heartbeat = {
    "last_run": None,
    "last_success": None,
    "records_processed": 0,
    "errors": 0,
}


async def run_reservation_sweep(engine: Optional[ReservationEngine] = None) -> dict:
    """Run one sweep and update the heartbeat."""
    sweep_heartbeat["last_run"] = datetime.now(timezone.utc).isoformat()

    try:
        stats = await release_expired_reservations(engine=engine)
    except Exception as e:
        sweep_heartbeat["errors"] += 1
        logger.error(f"Reservation sweep failed: {e}", exc_info=True)
        return {"reservations_released": 0, "errors": 1}

    sweep_heartbeat["last_success"] = datetime.now(timezone.utc).isoformat()
    sweep_heartbeat["records_processed"] += stats.get("reservations_released", 0)
    sweep_heartbeat["errors"] += stats.get("errors", 0)
    return stats


async def reservation_sweep_scheduler(engine: Optional[ReservationEngine] = None) -> None:
    """
    Background loop that sweeps at RESERVATION_SWEEP_INTERVAL_MINUTES.
    Runs until cancelled during shutdown.
    """
    interval_seconds = settings.RESERVATION_SWEEP_INTERVAL_MINUTES * 60
    logger.info(f"Reservation sweeper started (interval: {settings.RESERVATION_SWEEP_INTERVAL_MINUTES} minutes)")

    while True:
        await run_reservation_sweep(engine)
        await asyncio.sleep(interval_seconds)


async def main(once: bool) -> None:
    if once:
        stats = await run_reservation_sweep()
        logger.info(f"Sweep complete: {stats}")
        reservation_stats = await get_reservation_stats()
        logger.info(
            "Booked: %s  Active: %s  Expired: %s  Expiring within 1h: %s",
            reservation_stats["booked_items"],
            reservation_stats["active_reservations"],
            reservation_stats["expired_reservations"],
            reservation_stats["expiring_within_1h"],
        )
        return
    await reservation_sweep_scheduler()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(description="Release expired item reservations")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args()
    try:
        asyncio.run(main(args.once))
    except KeyboardInterrupt:
        logger.info("Reservation sweeper stopped")
