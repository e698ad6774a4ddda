"""Order model. One row per submitted trade request; immutable once terminal."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from margindesk.database import Base


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    ENTRY = "entry"  # limit-style pending order


class OrderStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.CLOSED.value, OrderStatus.CANCELLED.value})


class Order(Base):
    """A market or entry order and, once filled, the position it opened."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_paper: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    asset_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    asset_name: Mapped[str] = mapped_column(String(128), nullable=False)
    market_type: Mapped[str] = mapped_column(String(32), nullable=False)
    units: Mapped[float] = mapped_column(Float, nullable=False)
    price_per_unit: Mapped[float] = mapped_column(Float, nullable=False)  # requested price
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)  # units * price_per_unit
    trade_type: Mapped[str] = mapped_column(String(4), nullable=False)  # buy, sell
    order_type: Mapped[str] = mapped_column(String(10), nullable=False)  # market, entry
    status: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    stop_loss: Mapped[float | None] = mapped_column(Float, nullable=True)
    take_profit: Mapped[float | None] = mapped_column(Float, nullable=True)
    expiration_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    pnl: Mapped[float | None] = mapped_column(Float, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "is_paper": self.is_paper,
            "asset_symbol": self.asset_symbol,
            "asset_name": self.asset_name,
            "market_type": self.market_type,
            "units": self.units,
            "price_per_unit": self.price_per_unit,
            "total_amount": self.total_amount,
            "trade_type": self.trade_type,
            "order_type": self.order_type,
            "status": self.status,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "expiration_date": self.expiration_date.isoformat() if self.expiration_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "close_price": self.close_price,
            "pnl": self.pnl,
        }
