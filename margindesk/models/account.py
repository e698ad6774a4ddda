"""Margin account model. One live and at most one paper account per user."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from margindesk.database import Base


class Account(Base):
    """Cash, margin and P&L totals for one user book.

    Derived fields (``available_funds``, ``equity``) are stored so readers never
    recompute them, but only ``AccountLedger`` writes any of these columns.
    """

    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("user_id", "is_paper"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_paper: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cash_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    equity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    used_margin: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    available_funds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    realized_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unrealized_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "is_paper": self.is_paper,
            "cash_balance": self.cash_balance,
            "equity": self.equity,
            "used_margin": self.used_margin,
            "available_funds": self.available_funds,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }
