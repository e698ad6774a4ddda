"""Order/position engine: ALL order state transitions go through here.

    submit market order   -> OPEN      (funds checked, margin locked)
    submit entry order    -> PENDING   (no funds committed)
    fill entry order      PENDING -> OPEN
    close position        OPEN    -> CLOSED    (margin released, P&L booked)
    cancel / expire       PENDING -> CANCELLED

CLOSED and CANCELLED are terminal. Each operation runs as one transaction
scoped to a single user's account, the affected order and the affected
portfolio entry, serialized per user by an in-process lock plus
``SELECT ... FOR UPDATE`` on the rows. Quote lookups happen before the
transaction starts, never inside it.

Public methods never raise for a rejected request; they return a
``TradeResult`` carrying the error kind and message.
"""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from margindesk.config import settings
from margindesk.database import async_session
from margindesk.models.account import Account
from margindesk.models.order import Order, OrderStatus, OrderType
from margindesk.models.portfolio import PortfolioEntry
from margindesk.services.alerting import AlertService
from margindesk.services.data.feeds import MarketQuoteSource, QuoteSource, QuoteUnavailable
from margindesk.services.data.market_calendar import is_market_open, next_open
from margindesk.services.errors import (
    InsufficientFunds,
    InvalidAccountState,
    InvalidState,
    MarketClosed,
    NotFound,
    PersistenceFailure,
    TradeError,
    TradeResult,
    ValidationError,
)
from margindesk.services.ledger import AccountLedger
from margindesk.services.margin import (
    affordable,
    margin_level,
    margin_required,
    normalize_market_type,
    position_pnl,
    quote_order,
)
from margindesk.services.portfolio import PortfolioAggregator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as some drivers return them) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderRequest(BaseModel):
    """A trade request as submitted by the client."""

    model_config = ConfigDict(allow_inf_nan=False)

    asset_symbol: str = Field(..., min_length=1, max_length=32)
    asset_name: str = Field(..., min_length=1, max_length=128)
    market_type: str = Field(..., min_length=1, max_length=32)
    units: float = Field(..., gt=0)
    price_per_unit: float = Field(..., gt=0, description="Requested price per unit")
    trade_type: Literal["buy", "sell"]
    order_type: Literal["market", "entry"] | None = None
    stop_loss: float | None = Field(None, gt=0)
    take_profit: float | None = Field(None, gt=0)
    expiration_date: datetime | None = None
    is_paper: bool = False

    @field_validator("asset_symbol")
    @classmethod
    def symbol_upper(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("symbol cannot be empty")
        return v.upper()

    @field_validator("market_type")
    @classmethod
    def market_type_alias(cls, v: str) -> str:
        return normalize_market_type(v.strip())

    @field_validator("expiration_date")
    @classmethod
    def expiration_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None


def parse_request(request: OrderRequest | dict) -> OrderRequest:
    """Validate a raw request, converting pydantic errors into ``ValidationError``."""
    if isinstance(request, OrderRequest):
        return request
    try:
        return OrderRequest.model_validate(request)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid trade parameters: {problems}") from e


class OrderEngine:
    """Margin/position/order state machine over the accounts, orders and portfolio tables."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        ledger: AccountLedger | None = None,
        portfolio: PortfolioAggregator | None = None,
        quotes: QuoteSource | None = None,
        enforce_market_hours: bool | None = None,
        clock: Callable[[], datetime] | None = None,
        alerts: AlertService | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session
        # Fill/close notifications, sent after the transaction commits
        self._alerts = alerts
        self._ledger = ledger or AccountLedger()
        self._portfolio = portfolio or PortfolioAggregator()
        self._quotes = quotes
        # A quote source built here is closed by close(); an injected one belongs to the caller
        self._owns_quotes = quotes is None
        self._enforce_market_hours = (
            settings.enforce_market_hours if enforce_market_hours is None else enforce_market_hours
        )
        self._clock = clock or _utcnow
        # User-level locks to serialize operations on one account, dropped once unused
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}

    @property
    def quotes(self) -> QuoteSource:
        if self._quotes is None:
            self._quotes = MarketQuoteSource()
        return self._quotes

    async def close(self) -> None:
        """Release the quote source's connections if this engine created it."""
        if self._owns_quotes and self._quotes is not None:
            await self._quotes.close()

    def _acquire_user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        self._lock_refs[user_id] = self._lock_refs.get(user_id, 0) + 1
        return lock

    def _release_user_lock(self, user_id: str) -> None:
        self._lock_refs[user_id] -= 1
        if self._lock_refs[user_id] == 0:
            del self._lock_refs[user_id]
            del self._user_locks[user_id]

    async def _execute(
        self,
        user_id: str,
        action: str,
        op: Callable[[AsyncSession], Awaitable[TradeResult]],
    ) -> TradeResult:
        """Run ``op`` in one locked transaction; map failures to results.

        Anything raised inside rolls the whole transaction back, so a failed
        operation leaves no order, account or portfolio change behind.
        """
        lock = self._acquire_user_lock(user_id)
        try:
            async with lock:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await op(session)
        except TradeError as e:
            logger.warning("%s rejected for %s: %s", action, user_id, e.message)
            return TradeResult.fail(e)
        except SQLAlchemyError as e:
            logger.error("%s failed for %s: %s", action, user_id, e)
            return TradeResult.fail(
                PersistenceFailure(f"{action} failed: storage error, nothing was applied")
            )
        finally:
            self._release_user_lock(user_id)

    async def _notify_fill(self, result: TradeResult) -> TradeResult:
        if result.success and self._alerts is not None:
            filled = result.data["order"]
            await self._alerts.order_filled(
                filled["user_id"],
                filled["is_paper"],
                filled["asset_symbol"],
                filled["trade_type"],
                filled["units"],
                filled["price_per_unit"],
                result.data["margin_required"],
            )
        return result

    # ---------- guards ----------

    def _check_market_open(self, market_type: str, now: datetime) -> None:
        if self._enforce_market_hours and not is_market_open(market_type, now):
            opens = next_open(market_type, now)
            raise MarketClosed(
                f"Market is closed for {market_type}. Opens at {opens.isoformat()}"
            )

    async def _load_order(self, session: AsyncSession, user_id: str, order_id: str) -> Order:
        result = await session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        # Other users' orders are reported as missing
        if order is None or order.user_id != user_id:
            raise NotFound(f"Order {order_id} not found")
        return order

    def _require_affordable(self, account: Account, margin: float) -> None:
        if not affordable(account, margin):
            raise InsufficientFunds(
                f"Insufficient funds. Required: {margin:.2f}, "
                f"Available: {account.available_funds:.2f}"
            )

    async def _open_position(
        self, session: AsyncSession, account: Account, order: Order, now: datetime
    ) -> float:
        """Debit margin and fold the fill into the portfolio. Returns the margin."""
        margin = margin_required(order.market_type, order.total_amount)
        self._require_affordable(account, margin)
        order.status = OrderStatus.OPEN.value
        order.executed_at = now
        self._ledger.debit_for_open(account, margin)
        session.add(order)
        await self._portfolio.apply_open_fill(session, order)
        return margin

    # ---------- submissions ----------

    async def submit_order(self, user_id: str, request: OrderRequest | dict) -> TradeResult:
        """Route a request by its ``order_type`` (market when omitted)."""
        try:
            req = parse_request(request)
        except ValidationError as e:
            return TradeResult.fail(e)
        if req.order_type == OrderType.ENTRY.value:
            return await self.submit_entry_order(user_id, req)
        return await self.submit_market_order(user_id, req)

    async def submit_market_order(self, user_id: str, request: OrderRequest | dict) -> TradeResult:
        """Open a position immediately at the requested price."""
        now = self._clock()
        try:
            req = parse_request(request)
            if req.order_type not in (None, OrderType.MARKET.value):
                raise ValidationError("Entry orders must be submitted as entry orders")
            self._check_market_open(req.market_type, now)
        except ValidationError as e:
            logger.warning("Market order rejected for %s: %s", user_id, e.message)
            return TradeResult.fail(e)

        async def op(session: AsyncSession) -> TradeResult:
            account = await self._ledger.load_for_update(session, user_id, req.is_paper)
            order = self._new_order(user_id, req, OrderType.MARKET, now)
            # Funds are checked before the order row is added
            margin = await self._open_position(session, account, order, now)
            logger.info(
                "Market order filled: %s %s %.8g %s @ %.8g, margin %.2f (order %s)",
                user_id, req.trade_type, req.units, req.asset_symbol,
                req.price_per_unit, margin, order.id,
            )
            return TradeResult.ok(
                "Trade executed successfully",
                order_id=order.id,
                margin_required=margin,
                order=order.to_dict(),
            )

        return await self._notify_fill(await self._execute(user_id, "submit_market_order", op))

    async def submit_entry_order(self, user_id: str, request: OrderRequest | dict) -> TradeResult:
        """Park a pending entry order. No funds are checked or committed."""
        now = self._clock()
        try:
            req = parse_request(request)
            if req.order_type not in (None, OrderType.ENTRY.value):
                raise ValidationError("Market orders must be submitted as market orders")
            if req.expiration_date is not None and req.expiration_date <= now:
                raise ValidationError("Expiration date must be in the future")
        except ValidationError as e:
            logger.warning("Entry order rejected for %s: %s", user_id, e.message)
            return TradeResult.fail(e)

        async def op(session: AsyncSession) -> TradeResult:
            # Account must exist even though nothing is debited
            await self._ledger.load_for_update(session, user_id, req.is_paper)
            order = self._new_order(user_id, req, OrderType.ENTRY, now)
            order.status = OrderStatus.PENDING.value
            order.expiration_date = req.expiration_date
            session.add(order)
            await session.flush()
            logger.info(
                "Entry order placed: %s %s %.8g %s @ %.8g (order %s)",
                user_id, req.trade_type, req.units, req.asset_symbol, req.price_per_unit, order.id,
            )
            return TradeResult.ok("Entry order placed successfully", order_id=order.id)

        return await self._execute(user_id, "submit_entry_order", op)

    def _new_order(
        self, user_id: str, req: OrderRequest, order_type: OrderType, now: datetime
    ) -> Order:
        return Order(
            user_id=user_id,
            is_paper=req.is_paper,
            asset_symbol=req.asset_symbol,
            asset_name=req.asset_name,
            market_type=req.market_type,
            units=req.units,
            price_per_unit=req.price_per_unit,
            total_amount=req.units * req.price_per_unit,
            trade_type=req.trade_type,
            order_type=order_type.value,
            status=OrderStatus.PENDING.value,
            stop_loss=req.stop_loss,
            take_profit=req.take_profit,
            created_at=now,
        )

    # ---------- transitions on existing orders ----------

    async def fill_entry_order(self, user_id: str, order_id: str) -> TradeResult:
        """Execute a pending entry order at its requested price."""
        now = self._clock()

        async def op(session: AsyncSession) -> TradeResult:
            order = await self._load_order(session, user_id, order_id)
            if order.status != OrderStatus.PENDING.value:
                raise InvalidState(f"Order is not pending (current status: {order.status})")
            if order.expiration_date is not None and _as_utc(order.expiration_date) <= now:
                raise InvalidState(f"Entry order {order_id} has expired")
            self._check_market_open(order.market_type, now)
            account = await self._ledger.load_for_update(session, user_id, order.is_paper)
            margin = await self._open_position(session, account, order, now)
            logger.info(
                "Entry order filled: %s %s @ %.8g, margin %.2f",
                order.id, order.asset_symbol, order.price_per_unit, margin,
            )
            return TradeResult.ok(
                "Entry order executed",
                order_id=order.id,
                margin_required=margin,
                order=order.to_dict(),
            )

        return await self._notify_fill(await self._execute(user_id, "fill_entry_order", op))

    async def close_position(self, user_id: str, order_id: str, close_price: float) -> TradeResult:
        """Close an open position at ``close_price`` and book the P&L."""
        if close_price is None or not math.isfinite(close_price) or close_price <= 0:
            return TradeResult.fail(
                ValidationError("Close price must be a finite number greater than zero")
            )
        now = self._clock()

        async def op(session: AsyncSession) -> TradeResult:
            order = await self._load_order(session, user_id, order_id)
            if order.status != OrderStatus.OPEN.value:
                raise InvalidState(f"Trade is not open (current status: {order.status})")

            pnl = position_pnl(order.trade_type, order.price_per_unit, close_price, order.units)
            # Release what was locked at open, not a revaluation at close_price
            margin = margin_required(order.market_type, order.total_amount)
            account = await self._ledger.load_for_update(session, user_id, order.is_paper)
            released = self._ledger.credit_for_close(account, margin, pnl)

            order.status = OrderStatus.CLOSED.value
            order.close_price = close_price
            order.closed_at = now
            order.pnl = pnl
            await self._portfolio.apply_close_fill(session, order, close_price)

            logger.info(
                "Position closed: %s %s @ %.8g, P&L %.2f, released margin %.2f",
                order.id, order.asset_symbol, close_price, pnl, released,
            )
            return TradeResult.ok(
                f"Position closed at {close_price}. P&L: {pnl:.2f}",
                order_id=order.id,
                pnl=pnl,
                released_margin=released,
                order=order.to_dict(),
            )

        result = await self._execute(user_id, "close_position", op)
        if result.success and self._alerts is not None:
            closed = result.data["order"]
            await self._alerts.position_closed(
                user_id, closed["is_paper"], closed["asset_symbol"], close_price, closed["pnl"]
            )
        return result

    async def close_position_at_market(self, user_id: str, order_id: str) -> TradeResult:
        """Close at the current quote, resolved before the transaction."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.asset_symbol, Order.market_type).where(
                    Order.id == order_id, Order.user_id == user_id
                )
            )
            row = result.one_or_none()
        if row is None:
            return TradeResult.fail(NotFound(f"Order {order_id} not found"))
        try:
            price = await self.quotes.get_quote(row.asset_symbol, row.market_type)
        except QuoteUnavailable as e:
            logger.warning("Close at market failed for %s: %s", order_id, e)
            return TradeResult.fail(ValidationError(str(e)))
        return await self.close_position(user_id, order_id, price)

    async def cancel_order(self, user_id: str, order_id: str) -> TradeResult:
        """Cancel a pending order. No financial side effect."""
        now = self._clock()

        async def op(session: AsyncSession) -> TradeResult:
            order = await self._load_order(session, user_id, order_id)
            if order.status != OrderStatus.PENDING.value:
                raise InvalidState("Only pending orders can be cancelled")
            order.status = OrderStatus.CANCELLED.value
            order.closed_at = now
            logger.info("Order cancelled: %s %s", order.id, order.asset_symbol)
            return TradeResult.ok("Order cancelled", order_id=order.id)

        return await self._execute(user_id, "cancel_order", op)

    async def expire_entry_orders(self) -> int:
        """Cancel pending entry orders past their expiration date. Returns the count."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.id, Order.user_id).where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.order_type == OrderType.ENTRY.value,
                    Order.expiration_date.is_not(None),
                    Order.expiration_date <= now,
                )
            )
            candidates = result.all()

        expired = 0
        for order_id, user_id in candidates:

            async def op(session: AsyncSession, order_id: str = order_id, user_id: str = user_id) -> TradeResult:
                order = await self._load_order(session, user_id, order_id)
                # Filled or cancelled since the scan
                if order.status != OrderStatus.PENDING.value:
                    return TradeResult.ok("Order no longer pending", expired=False)
                order.status = OrderStatus.CANCELLED.value
                order.closed_at = now
                return TradeResult.ok("Order expired", expired=True)

            res = await self._execute(user_id, "expire_entry_order", op)
            if res.success and res.data.get("expired"):
                expired += 1

        if expired:
            logger.info("Expired %d entry orders", expired)
        return expired

    # ---------- accounts ----------

    async def open_account(
        self, user_id: str, initial_balance: float = 0.0, is_paper: bool = False
    ) -> TradeResult:
        async def op(session: AsyncSession) -> TradeResult:
            existing = await session.execute(
                select(Account.id).where(Account.user_id == user_id, Account.is_paper == is_paper)
            )
            if existing.scalar_one_or_none() is not None:
                raise InvalidAccountState(f"Account already exists for user {user_id}")
            account = self._ledger.open_account(user_id, initial_balance, is_paper)
            session.add(account)
            await session.flush()
            logger.info("Account opened: %s (paper=%s) with %.2f", user_id, is_paper, initial_balance)
            return TradeResult.ok("Account opened", account=account.to_dict())

        return await self._execute(user_id, "open_account", op)

    async def get_account(self, user_id: str, is_paper: bool = False) -> TradeResult:
        async def op(session: AsyncSession) -> TradeResult:
            account = await self._ledger.load(session, user_id, is_paper)
            data = account.to_dict()
            data["margin_level"] = margin_level(account.equity, account.used_margin)
            return TradeResult.ok("Account loaded", account=data)

        return await self._execute(user_id, "get_account", op)

    async def deposit(self, user_id: str, amount: float, is_paper: bool = False) -> TradeResult:
        async def op(session: AsyncSession) -> TradeResult:
            account = await self._ledger.load_for_update(session, user_id, is_paper)
            self._ledger.deposit(account, amount)
            logger.info("Deposit: %s +%.2f", user_id, amount)
            return TradeResult.ok("Deposit applied", account=account.to_dict())

        return await self._execute(user_id, "deposit", op)

    async def withdraw(self, user_id: str, amount: float, is_paper: bool = False) -> TradeResult:
        async def op(session: AsyncSession) -> TradeResult:
            account = await self._ledger.load_for_update(session, user_id, is_paper)
            self._ledger.withdraw(account, amount)
            logger.info("Withdrawal: %s -%.2f", user_id, amount)
            return TradeResult.ok("Withdrawal applied", account=account.to_dict())

        return await self._execute(user_id, "withdraw", op)

    async def preview_order(self, user_id: str, request: OrderRequest | dict) -> TradeResult:
        """Margin, fee and affordability for a request, without side effects."""
        try:
            req = parse_request(request)
        except ValidationError as e:
            return TradeResult.fail(e)

        async def op(session: AsyncSession) -> TradeResult:
            account = await self._ledger.load(session, user_id, req.is_paper)
            quote = quote_order(
                req.market_type, req.units, req.price_per_unit, account.available_funds
            )
            return TradeResult.ok("Order preview", **quote.to_dict())

        return await self._execute(user_id, "preview_order", op)

    # ---------- reads ----------

    async def list_orders(
        self, user_id: str, status: str | None = None, limit: int = 100
    ) -> TradeResult:
        if status is not None and status not in {s.value for s in OrderStatus}:
            return TradeResult.fail(ValidationError(f"Unknown order status: {status}"))
        try:
            async with self._session_factory() as session:
                query = select(Order).where(Order.user_id == user_id)
                if status is not None:
                    query = query.where(Order.status == status)
                result = await session.execute(
                    query.order_by(Order.created_at.desc()).limit(limit)
                )
                orders = [o.to_dict() for o in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("list_orders failed for %s: %s", user_id, e)
            return TradeResult.fail(PersistenceFailure("Could not load orders"))
        return TradeResult.ok(f"{len(orders)} orders", orders=orders)

    async def get_portfolio(self, user_id: str, is_paper: bool = False) -> TradeResult:
        try:
            async with self._session_factory() as session:
                entries = await self._portfolio.list_entries(session, user_id, is_paper)
                data = [e.to_dict() for e in entries]
        except SQLAlchemyError as e:
            logger.error("get_portfolio failed for %s: %s", user_id, e)
            return TradeResult.fail(PersistenceFailure("Could not load portfolio"))
        return TradeResult.ok(f"{len(data)} positions", entries=data)

    async def books_with_exposure(self) -> list[tuple[str, bool]]:
        """(user_id, is_paper) pairs that hold at least one portfolio entry."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PortfolioEntry.user_id, PortfolioEntry.is_paper)
                .distinct()
                .order_by(PortfolioEntry.user_id)
            )
            return [(user_id, is_paper) for user_id, is_paper in result.all()]

    async def refresh_portfolio(self, user_id: str, is_paper: bool = False) -> TradeResult:
        """Revalue the user's portfolio at live quotes and mark the account to market."""
        try:
            async with self._session_factory() as session:
                entries = await self._portfolio.list_entries(session, user_id, is_paper)
                symbols = {e.asset_symbol: e.market_type for e in entries}
        except SQLAlchemyError as e:
            logger.error("refresh_portfolio failed for %s: %s", user_id, e)
            return TradeResult.fail(PersistenceFailure("Could not load portfolio"))

        prices: dict[str, float] = {}
        for symbol, market_type in symbols.items():
            try:
                prices[symbol] = await self.quotes.get_quote(symbol, market_type)
            except QuoteUnavailable as e:
                logger.warning("Skipping revaluation of %s: %s", symbol, e)

        async def op(session: AsyncSession) -> TradeResult:
            account = await self._ledger.load_for_update(session, user_id, is_paper)
            unrealized = await self._portfolio.refresh(session, user_id, is_paper, prices)
            self._ledger.mark_to_market(account, unrealized)
            entries = await self._portfolio.list_entries(session, user_id, is_paper)
            data: dict[str, Any] = account.to_dict()
            data["margin_level"] = margin_level(account.equity, account.used_margin)
            return TradeResult.ok(
                "Portfolio refreshed",
                account=data,
                entries=[e.to_dict() for e in entries],
                priced=sorted(prices),
            )

        return await self._execute(user_id, "refresh_portfolio", op)
