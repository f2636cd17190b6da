"""
User model

Carries the prepaid balance ledger. Only BalanceService writes `balance`.
"""
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Boolean, Numeric, CheckConstraint
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import UTCDateTime


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)

    # Simulated internal funds, never negative
    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    orders = relationship("Order", back_populates="user", foreign_keys="Order.user_id")
    items = relationship("Item", back_populates="owner", foreign_keys="Item.owner_id")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="check_balance_non_negative"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"
