"""
Throttling for the money-moving routes

Book, purchase and top-up are limited per caller: the user id from the bearer
token when it is valid, otherwise the client address. Counters live in process
memory, so each worker enforces its own budget.
"""
import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from storefront.core.config import settings
from storefront.core.security import user_id_from_token

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 60


def client_address(request: Request) -> str:
    # First hop of X-Forwarded-For is the original client
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def caller_key(request: Request) -> str:
    """Bucket name: "user:<id>" for authenticated calls, "ip:<address>" otherwise."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        user_id = user_id_from_token(token.strip())
        if user_id is not None:
            return f"user:{user_id}"
    return f"ip:{client_address(request)}"


limiter = Limiter(
    key_func=caller_key,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 in the same body shape the domain errors use."""
    logger.warning("Rate limit hit by %s on %s %s", caller_key(request), request.method, request.url.path)
    return JSONResponse(
        status_code=429,
        content={
            "error": "RATE_LIMITED",
            "message": "Too many requests; retry shortly",
            "details": {"limit": exc.detail, "retry_after_seconds": RETRY_AFTER_SECONDS},
        },
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


def checkout_limit():
    """Per-caller limit for booking and purchasing."""
    return limiter.limit(settings.RATE_LIMIT_CHECKOUT)


def top_up_limit():
    return limiter.limit(settings.RATE_LIMIT_TOP_UP)
