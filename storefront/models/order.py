"""
Order model

Append-style ledger of bookings and sales for an item. The latest order
(created_at, then id) is authoritative for the item's status.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, Index, Enum, CheckConstraint
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import UTCDateTime


class OrderStatus(str, PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Orders that still hold the item
OPEN_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class OrderReason:
    """Values for Order.update_reason."""
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    CONVERTED_TO_SALE = "converted_to_sale"
    ADMIN = "admin"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(
        Enum(OrderStatus, name="order_status", native_enum=False, length=16),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    created_at = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    completed_at = Column(UTCDateTime, nullable=True)
    # Reservation hold end, set on booking orders
    expires_at = Column(UTCDateTime, nullable=True)

    update_reason = Column(String(64), nullable=True)

    item = relationship("Item", back_populates="orders")
    user = relationship("User", back_populates="orders", foreign_keys=[user_id])

    __table_args__ = (
        Index("ix_orders_item_created", "item_id", "created_at", "id"),
        Index("ix_orders_user_id", "user_id"),
        CheckConstraint("quantity > 0", name="check_order_quantity_positive"),
        CheckConstraint("total_amount >= 0", name="check_order_total_non_negative"),
        CheckConstraint(
            "(status = 'COMPLETED' AND completed_at IS NOT NULL) OR "
            "(status <> 'COMPLETED' AND completed_at IS NULL)",
            name="check_order_completed_at",
        ),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, item_id={self.item_id}, status={self.status})>"
