"""
Error handling for the HTTP boundary

- Domain errors (StorefrontError) -> status code by kind, structured body
- Anything unexpected -> logged with traceback, generic message to the client
"""
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.core.config import settings
from storefront.core.exceptions import (
    ConcurrencyConflictError,
    ForbiddenError,
    InsufficientFundsError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    StorefrontError,
)

logger = logging.getLogger(__name__)

# Most specific first; subclasses inherit their parent's status
STATUS_BY_ERROR = [
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ForbiddenError, 403),
    (InsufficientFundsError, 402),
    (InvalidArgumentError, 422),
    (ConcurrencyConflictError, 409),
]


def status_for_error(exc: StorefrontError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    status_code = status_for_error(exc)
    logger.info(
        "%s %s -> %s %s: %s",
        request.method, request.url.path, status_code, exc.code, exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
        },
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            if settings.DEBUG:
                content = {
                    "error": "internal_error",
                    "message": str(e),
                    "type": type(e).__name__,
                    "error_id": error_id,
                }
            else:
                content = {
                    "error": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "error_id": error_id,
                }
            return JSONResponse(status_code=500, content=content)


def setup_error_handling(app: FastAPI) -> None:
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_middleware(ErrorSanitizationMiddleware)
