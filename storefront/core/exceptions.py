"""
Music Store Exception Hierarchy

Structured exception classes for the reservation engine and balance ledger.
All exceptions carry code, message and details so the HTTP boundary can
render them and logs can record them without string parsing.

Exception Hierarchy:
    StorefrontError
    ├── NotFoundError
    ├── InvalidStateError
    │   └── AlreadySoldError
    ├── ForbiddenError
    │   └── ReservedByOtherError
    ├── InsufficientFundsError
    ├── InvalidArgumentError
    └── ConcurrencyConflictError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    """
    Base exception for all Music Store domain errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
    """

    default_code: str = "STOREFRONT_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class NotFoundError(StorefrontError):
    """Item, order or user does not exist."""
    default_code = "NOT_FOUND"

    def __init__(self, message: str, entity: Optional[str] = None, entity_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"entity": entity, "entity_id": entity_id})
        super().__init__(message, details=details, **kwargs)


class InvalidStateError(StorefrontError):
    """Operation is not valid for the item's current status."""
    default_code = "INVALID_STATE"

    def __init__(self, message: str, item_id: Optional[int] = None, status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"item_id": item_id, "status": status})
        super().__init__(message, details=details, **kwargs)


class AlreadySoldError(InvalidStateError):
    """Item has already been sold."""
    default_code = "ALREADY_SOLD"


class ForbiddenError(StorefrontError):
    """Authorization or business-rule violation (e.g. self-booking)."""
    default_code = "FORBIDDEN"


class ReservedByOtherError(ForbiddenError):
    """Item is held by a reservation that belongs to another user."""
    default_code = "RESERVED_BY_OTHER"


class InsufficientFundsError(StorefrontError):
    """Balance does not cover the requested debit."""
    default_code = "INSUFFICIENT_FUNDS"

    def __init__(self, message: str, required=None, available=None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({
            "required": str(required) if required is not None else None,
            "available": str(available) if available is not None else None,
        })
        super().__init__(message, details=details, **kwargs)


class InvalidArgumentError(StorefrontError):
    """Caller supplied a value outside the accepted domain."""
    default_code = "INVALID_ARGUMENT"


class ConcurrencyConflictError(StorefrontError):
    """Optimistic version check kept failing after all retries."""
    default_code = "CONCURRENCY_CONFLICT"
