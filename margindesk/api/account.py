"""Account API routes: open, fund and inspect margin accounts and portfolios."""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from margindesk.api.auth import current_user_id, require_api_key
from margindesk.api.deps import get_engine, to_response
from margindesk.services.engine import OrderEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/account", tags=["account"])


class OpenAccountRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    initial_balance: float = Field(0.0, ge=0)
    is_paper: bool = False


class FundsRequest(BaseModel):
    """Request body for deposits and withdrawals."""

    model_config = ConfigDict(allow_inf_nan=False)

    amount: float = Field(..., gt=0)
    is_paper: bool = False


@router.post("/", dependencies=[Depends(require_api_key)])
async def open_account(
    req: OpenAccountRequest,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    result = await engine.open_account(user_id, req.initial_balance, is_paper=req.is_paper)
    return to_response(result, success_status=201)


@router.get("/")
async def get_account(
    is_paper: bool = Query(False),
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Balances, margin and P&L totals plus the current margin level."""
    return to_response(await engine.get_account(user_id, is_paper=is_paper))


@router.post("/deposit", dependencies=[Depends(require_api_key)])
async def deposit(
    req: FundsRequest,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    return to_response(await engine.deposit(user_id, req.amount, is_paper=req.is_paper))


@router.post("/withdraw", dependencies=[Depends(require_api_key)])
async def withdraw(
    req: FundsRequest,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Withdraw cash not locked as margin."""
    return to_response(await engine.withdraw(user_id, req.amount, is_paper=req.is_paper))


@router.get("/portfolio")
async def get_portfolio(
    is_paper: bool = Query(False),
    refresh: bool = Query(False, description="Revalue at live quotes first"),
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Open exposure per symbol. With ``refresh`` the account is marked to market."""
    if refresh:
        return to_response(await engine.refresh_portfolio(user_id, is_paper=is_paper))
    return to_response(await engine.get_portfolio(user_id, is_paper=is_paper))
