"""Order API routes: submit, preview, fill, close and cancel orders."""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from margindesk.api.auth import current_user_id, require_api_key
from margindesk.api.deps import get_engine, to_response
from margindesk.services.engine import OrderEngine, OrderRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])


class ClosePositionRequest(BaseModel):
    """Request body for closing a position."""

    model_config = ConfigDict(allow_inf_nan=False)

    close_price: float | None = Field(
        None, gt=0, description="Close price; the live quote is used when omitted"
    )


@router.post("/market", dependencies=[Depends(require_api_key)])
async def submit_market_order(
    req: OrderRequest,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Open a position now, if the account can margin it."""
    result = await engine.submit_market_order(user_id, req)
    return to_response(result, success_status=201)


@router.post("/entry", dependencies=[Depends(require_api_key)])
async def submit_entry_order(
    req: OrderRequest,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Place a pending entry order. Funds are checked when it is filled."""
    result = await engine.submit_entry_order(user_id, req)
    return to_response(result, success_status=201)


@router.post("/preview")
async def preview_order(
    req: OrderRequest,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Margin, fee and affordability breakdown for a request."""
    return to_response(await engine.preview_order(user_id, req))


@router.post("/{order_id}/close", dependencies=[Depends(require_api_key)])
async def close_position(
    order_id: str,
    req: ClosePositionRequest | None = None,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Close an open position at the given price or the current quote."""
    if req is None or req.close_price is None:
        result = await engine.close_position_at_market(user_id, order_id)
    else:
        result = await engine.close_position(user_id, order_id, req.close_price)
    return to_response(result)


@router.post("/{order_id}/fill", dependencies=[Depends(require_api_key)])
async def fill_entry_order(
    order_id: str,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Execute a pending entry order at its requested price."""
    return to_response(await engine.fill_entry_order(user_id, order_id))


@router.delete("/{order_id}", dependencies=[Depends(require_api_key)])
async def cancel_order(
    order_id: str,
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """Cancel a pending order."""
    return to_response(await engine.cancel_order(user_id, order_id))


@router.get("/")
async def list_orders(
    status: str | None = Query(None, description="pending, open, closed or cancelled"),
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(current_user_id),
    engine: OrderEngine = Depends(get_engine),
):
    """List the caller's orders, newest first."""
    return to_response(await engine.list_orders(user_id, status=status, limit=limit))
