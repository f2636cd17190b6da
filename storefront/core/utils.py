"""
Core Utilities

Shared helpers used across the application.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

CENTS = Decimal("0.01")


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def to_money(amount) -> Decimal:
    """Quantize a monetary amount to cents."""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as timezone-aware UTC.

    Backends without native timezone support hand back naive values; those are
    stored in UTC so they are re-tagged on load. Comparing them with
    utcnow() would otherwise raise "can't compare offset-naive and
    offset-aware datetimes".
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
