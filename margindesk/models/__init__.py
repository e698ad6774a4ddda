"""SQLAlchemy models for MarginDesk."""

from margindesk.models.account import Account
from margindesk.models.order import Order, OrderStatus, OrderType, TradeType
from margindesk.models.portfolio import PortfolioEntry

__all__ = ["Account", "Order", "OrderStatus", "OrderType", "TradeType", "PortfolioEntry"]
