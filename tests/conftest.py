"""Shared test fixtures.

Engine tests run against in-memory SQLite (aiosqlite). ``StaticPool`` keeps
every session on the same connection so the database survives between them.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from margindesk.database import Base
from margindesk.models.account import Account
from margindesk.models.order import Order
from margindesk.models.portfolio import PortfolioEntry
from margindesk.services.data.feeds import QuoteUnavailable
from margindesk.services.engine import OrderEngine
from margindesk.services.ledger import AccountLedger

# Wednesday, mid-session for every asset class
MIDWEEK_NOON_ET = datetime(2026, 3, 11, 16, 0, tzinfo=timezone.utc)


class FakeQuoteSource:
    """Fixed prices; unknown symbols are unavailable."""

    def __init__(self, prices: dict[str, float] | None = None) -> None:
        self.prices = dict(prices or {})
        self.calls: list[str] = []

    async def get_quote(self, symbol: str, market_type: str | None = None) -> float:
        self.calls.append(symbol)
        if symbol not in self.prices:
            raise QuoteUnavailable(f"No quote available for {symbol}")
        return self.prices[symbol]


def make_request(**kwargs) -> dict:
    """Order request with sensible defaults (1 BTC @ 50,000, leverage 50)."""
    defaults = {
        "asset_symbol": "BTC",
        "asset_name": "Bitcoin",
        "market_type": "Crypto",
        "units": 1,
        "price_per_unit": 50000,
        "trade_type": "buy",
    }
    defaults.update(kwargs)
    return defaults


@pytest_asyncio.fixture
async def session_factory():
    db_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()


@pytest.fixture
def quotes() -> FakeQuoteSource:
    return FakeQuoteSource({"BTC": 50000.0, "AAPL": 150.0})


@pytest.fixture
def engine(session_factory, quotes) -> OrderEngine:
    """Engine with market hours off and a fixed clock."""
    return OrderEngine(
        session_factory=session_factory,
        ledger=AccountLedger(paper_starting_balance=10000.0),
        quotes=quotes,
        enforce_market_hours=False,
        clock=lambda: MIDWEEK_NOON_ET,
    )


@pytest_asyncio.fixture
async def funded(engine) -> str:
    """A live account holding 10,000 cash. Returns the user id."""
    result = await engine.open_account("alice", 10000.0)
    assert result.success, result.message
    return "alice"


async def fetch_account(session_factory, user_id: str, is_paper: bool = False) -> Account | None:
    from sqlalchemy import select

    async with session_factory() as session:
        result = await session.execute(
            select(Account).where(Account.user_id == user_id, Account.is_paper == is_paper)
        )
        return result.scalar_one_or_none()


async def fetch_order(session_factory, order_id: str) -> Order | None:
    async with session_factory() as session:
        return await session.get(Order, order_id)


async def fetch_orders(session_factory) -> list[Order]:
    from sqlalchemy import select

    async with session_factory() as session:
        result = await session.execute(select(Order))
        return list(result.scalars().all())


async def fetch_entries(session_factory, user_id: str) -> list[PortfolioEntry]:
    from sqlalchemy import select

    async with session_factory() as session:
        result = await session.execute(
            select(PortfolioEntry).where(PortfolioEntry.user_id == user_id)
        )
        return list(result.scalars().all())
