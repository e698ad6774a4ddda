"""Portfolio entry model: net exposure per (user, symbol, book)."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from margindesk.database import Base


class PortfolioEntry(Base):
    """Weighted-average cost basis of all fills for one symbol."""

    __tablename__ = "portfolio"
    __table_args__ = (UniqueConstraint("user_id", "asset_symbol", "is_paper"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_paper: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    asset_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    asset_name: Mapped[str] = mapped_column(String(128), nullable=False)
    market_type: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(4), nullable=False)  # buy, sell
    units: Mapped[float] = mapped_column(Float, nullable=False)
    average_price: Mapped[float] = mapped_column(Float, nullable=False)
    current_price: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    pnl_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "asset_symbol": self.asset_symbol,
            "asset_name": self.asset_name,
            "market_type": self.market_type,
            "direction": self.direction,
            "units": self.units,
            "average_price": self.average_price,
            "current_price": self.current_price,
            "total_value": self.total_value,
            "pnl": self.pnl,
            "pnl_percentage": self.pnl_percentage,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }
