"""
Music Store Backend
FastAPI application entry point

- Reservation sweeper started from the lifespan with heartbeat metrics
- Rate limiting with SlowAPI on book/purchase/top-up
- Domain errors rendered as structured JSON, everything else sanitized
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from storefront import __version__
from storefront.api.routes import admin, balance, items, orders
from storefront.core.config import settings
from storefront.core.database import get_db_session, init_models
from storefront.core.error_handler import setup_error_handling
from storefront.core.rate_limit import limiter, rate_limit_exceeded_handler
from storefront.jobs.reservation_sweeper import reservation_sweep_scheduler, sweep_heartbeat

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_sweep_task: Optional[asyncio.Task] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the reservation sweeper on startup, stop it on shutdown."""
    global _sweep_task

    if settings.DB_AUTO_CREATE:
        await init_models()
        logger.info("Database tables created")

    if settings.RESERVATION_SWEEP_ENABLED:
        _sweep_task = asyncio.create_task(reservation_sweep_scheduler())
        logger.info("Reservation sweeper ENABLED")
    else:
        logger.info("Reservation sweeper DISABLED via config")

    yield

    if _sweep_task and not _sweep_task.done():
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            logger.info("Reservation sweeper cancelled")


app = FastAPI(
    lifespan=lifespan,
    title=f"{settings.APP_NAME} API",
    version=__version__,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
setup_error_handling(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(items.router, prefix="/api")
app.include_router(balance.router, prefix="/api")
app.include_router(orders.router, prefix="/api")
app.include_router(admin.router, prefix="/api")


@app.get("/")
async def root():
    return {"message": f"{settings.APP_NAME} API", "status": "operational", "version": __version__}


@app.get("/health")
async def health():
    """Database ping plus reservation sweeper heartbeat."""
    db_ok = True
    try:
        async with get_db_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database ping failed: {e}")
        db_ok = False

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "ok" if db_ok else "unreachable",
        "reservation_sweeper": {
            "enabled": settings.RESERVATION_SWEEP_ENABLED,
            **sweep_heartbeat,
        },
    }
