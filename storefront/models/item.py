"""
Item model

A single catalog unit with inventory status. The status columns
(status, reserved_by_id, reservation_expiry, buyer_id) are a projection of the
item's order history and are written only by the reservation engine.

Concurrency: rows are locked with SELECT ... FOR UPDATE and additionally carry
a version counter (version_id_col), so a write based on a stale read fails
with StaleDataError instead of silently overwriting.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, Text, Numeric, ForeignKey, CheckConstraint, Index, Enum
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import UTCDateTime


class ItemStatus(str, PyEnum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    SOLD = "SOLD"


class Item(Base):
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text)
    price = Column(Numeric(12, 2), nullable=False)

    # Seller
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Inventory projection
    status = Column(
        Enum(ItemStatus, name="item_status", native_enum=False, length=16),
        nullable=False,
        default=ItemStatus.AVAILABLE,
        index=True,
    )
    reserved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    reservation_expiry = Column(UTCDateTime, nullable=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    owner = relationship("User", back_populates="items", foreign_keys=[owner_id])
    reserved_by = relationship("User", foreign_keys=[reserved_by_id])
    buyer = relationship("User", foreign_keys=[buyer_id])
    orders = relationship("Order", back_populates="item")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_items_booked_expiry", "status", "reservation_expiry"),
        CheckConstraint("price >= 0", name="check_item_price_non_negative"),
        CheckConstraint(
            "(status = 'BOOKED' AND reserved_by_id IS NOT NULL AND reservation_expiry IS NOT NULL) OR "
            "(status <> 'BOOKED' AND reserved_by_id IS NULL AND reservation_expiry IS NULL)",
            name="check_item_booking_fields",
        ),
        CheckConstraint(
            "(status = 'SOLD' AND buyer_id IS NOT NULL) OR (status <> 'SOLD' AND buyer_id IS NULL)",
            name="check_item_buyer_field",
        ),
    )

    def __repr__(self):
        return f"<Item(id={self.id}, status={self.status}, version={self.version})>"

    def is_reservation_lapsed(self, now: datetime) -> bool:
        """True for a BOOKED item whose expiry is already in the past."""
        return (
            self.status == ItemStatus.BOOKED
            and self.reservation_expiry is not None
            and self.reservation_expiry < now
        )
