"""
Balance routes

Read and top up the caller's prepaid balance.
"""
from fastapi import APIRouter, Depends, Request

from storefront.api.deps import get_balance_service, get_current_user
from storefront.core.rate_limit import top_up_limit
from storefront.models import User
from storefront.schemas import BalanceResponse, TopUpRequest
from storefront.services import BalanceService

router = APIRouter(prefix="/balance", tags=["balance"])


@router.get("", response_model=BalanceResponse)
async def get_balance(
    user: User = Depends(get_current_user),
    balances: BalanceService = Depends(get_balance_service),
):
    return BalanceResponse(user_id=user.id, balance=await balances.get_balance(user.id))


@router.post("/top-up", response_model=BalanceResponse)
@top_up_limit()
async def top_up(
    request: Request,
    payload: TopUpRequest,
    user: User = Depends(get_current_user),
    balances: BalanceService = Depends(get_balance_service),
):
    new_balance = await balances.top_up(user.id, payload.amount)
    return BalanceResponse(user_id=user.id, balance=new_balance)
