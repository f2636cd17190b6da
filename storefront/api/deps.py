"""
API dependencies

Bearer-token identity plus service construction. Services are built from
get_session_factory so tests can point the whole API at another database by
overriding that single dependency.
"""
from typing import FrozenSet, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from storefront.core.database import AsyncSessionLocal
from storefront.core.permissions import Capability, capabilities_for_user
from storefront.core.security import user_id_from_token
from storefront.models.user import User
from storefront.services import BalanceService, CatalogService, OrderService, ReservationEngine

security = HTTPBearer(auto_error=False)


def get_session_factory():
    return AsyncSessionLocal


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session_factory=Depends(get_session_factory),
) -> User:
    """Resolve the bearer token to an active user."""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    async with session_factory() as db:
        user = await db.get(User, user_id)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account is disabled",
        )

    return user


async def get_current_admin(user: User = Depends(get_current_user)) -> User:
    """Require admin user"""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def get_capabilities(user: User = Depends(get_current_user)) -> FrozenSet[Capability]:
    return capabilities_for_user(bool(user.is_admin))


def get_reservation_engine(session_factory=Depends(get_session_factory)) -> ReservationEngine:
    return ReservationEngine(session_factory=session_factory)


def get_balance_service(session_factory=Depends(get_session_factory)) -> BalanceService:
    return BalanceService(session_factory=session_factory)


def get_catalog_service(session_factory=Depends(get_session_factory)) -> CatalogService:
    return CatalogService(session_factory=session_factory)


def get_order_service(session_factory=Depends(get_session_factory)) -> OrderService:
    return OrderService(session_factory=session_factory)
