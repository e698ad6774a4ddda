"""Portfolio aggregator: one net entry per (user, symbol, book).

The entry is derived from the book's OPEN orders for the symbol. Same-direction
fills give the weighted-average entry price; opposite-direction orders net
against each other, and closing an order removes exactly its own cost basis.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from margindesk.models.order import Order, OrderStatus
from margindesk.models.portfolio import PortfolioEntry
from margindesk.services.margin import EPSILON

logger = logging.getLogger(__name__)


def direction_sign(direction: str) -> int:
    return 1 if direction == "buy" else -1


def revalue(entry: PortfolioEntry, current_price: float, now: datetime | None = None) -> None:
    """Recompute value and P&L of an entry at ``current_price``."""
    entry.current_price = current_price
    entry.total_value = entry.units * current_price
    entry.pnl = (current_price - entry.average_price) * entry.units * direction_sign(entry.direction)
    cost = entry.average_price * entry.units
    entry.pnl_percentage = entry.pnl / cost * 100 if cost > 0 else 0.0
    entry.last_updated = now or datetime.now(timezone.utc)


class PortfolioAggregator:
    """Maintains portfolio rows in the caller's transaction.

    An entry is the net of the book's open orders for one symbol: signed
    units are summed and the average price is the signed cost over the net
    units. Its P&L therefore always equals the summed P&L of those orders.
    """

    async def get(
        self, session: AsyncSession, user_id: str, symbol: str, is_paper: bool = False
    ) -> PortfolioEntry | None:
        result = await session.execute(
            select(PortfolioEntry)
            .where(
                PortfolioEntry.user_id == user_id,
                PortfolioEntry.asset_symbol == symbol,
                PortfolioEntry.is_paper == is_paper,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def list_entries(
        self, session: AsyncSession, user_id: str, is_paper: bool = False
    ) -> list[PortfolioEntry]:
        result = await session.execute(
            select(PortfolioEntry)
            .where(PortfolioEntry.user_id == user_id, PortfolioEntry.is_paper == is_paper)
            .order_by(PortfolioEntry.asset_symbol)
        )
        return list(result.scalars().all())

    async def apply_open_fill(self, session: AsyncSession, order: Order) -> PortfolioEntry | None:
        """Fold a newly opened order in. ``order`` must already be in the session."""
        return await self.sync(session, order, order.price_per_unit)

    async def apply_close_fill(
        self, session: AsyncSession, order: Order, close_price: float
    ) -> PortfolioEntry | None:
        """Take a closed order's own cost basis out of the entry."""
        return await self.sync(session, order, close_price)

    async def sync(
        self, session: AsyncSession, order: Order, price: float
    ) -> PortfolioEntry | None:
        """Rebuild the entry for ``order``'s symbol from the open orders.

        Returns the surviving entry, revalued at ``price``, or None when the
        open orders net to zero.
        """
        now = datetime.now(timezone.utc)
        await session.flush()
        result = await session.execute(
            select(Order.trade_type, Order.units, Order.price_per_unit).where(
                Order.user_id == order.user_id,
                Order.asset_symbol == order.asset_symbol,
                Order.is_paper == order.is_paper,
                Order.status == OrderStatus.OPEN.value,
            )
        )
        net_units = 0.0
        net_cost = 0.0
        for trade_type, units, price_per_unit in result.all():
            sign = direction_sign(trade_type)
            net_units += sign * units
            net_cost += sign * units * price_per_unit

        entry = await self.get(session, order.user_id, order.asset_symbol, order.is_paper)

        if abs(net_units) <= EPSILON:
            if entry is not None:
                await session.delete(entry)
                await session.flush()
                logger.info("Portfolio flat: %s removed", order.asset_symbol)
            return None

        direction = "buy" if net_units > 0 else "sell"
        if entry is None:
            entry = PortfolioEntry(
                user_id=order.user_id,
                is_paper=order.is_paper,
                asset_symbol=order.asset_symbol,
                asset_name=order.asset_name,
                market_type=order.market_type,
            )
            session.add(entry)
        entry.direction = direction
        entry.units = abs(net_units)
        entry.average_price = net_cost / net_units
        revalue(entry, price, now)
        await session.flush()
        logger.info(
            "Portfolio updated: %s %s %.8g units @ avg %.8g",
            entry.asset_symbol, entry.direction, entry.units, entry.average_price,
        )
        return entry

    async def refresh(
        self,
        session: AsyncSession,
        user_id: str,
        is_paper: bool,
        prices: dict[str, float],
    ) -> float:
        """Revalue entries at ``prices`` and return total unrealized P&L.

        Entries without a price keep their last valuation.
        """
        now = datetime.now(timezone.utc)
        total = 0.0
        for entry in await self.list_entries(session, user_id, is_paper):
            price = prices.get(entry.asset_symbol)
            if price is not None:
                revalue(entry, price, now)
            total += entry.pnl
        return total
