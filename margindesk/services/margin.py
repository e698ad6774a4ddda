"""Leverage table and margin calculator.

Pure functions only: no I/O, no session, no settings lookups except the fee
rate default. Every order that opens a position is sized through here, and
the margin released on close is recomputed here from the order's original
market type and total amount.
"""

from dataclasses import dataclass

from margindesk.config import settings

# Maximum leverage per asset class. Unknown classes are fully margined (1:1).
LEVERAGE_TABLE: dict[str, float] = {
    "Stocks": 20,  # 5% margin
    "Indices": 50,  # 2% margin
    "Commodities": 50,  # 2% margin
    "Forex": 100,  # 1% margin
    "Crypto": 50,  # 2% margin
}
DEFAULT_LEVERAGE = 1.0

MARKET_TYPE_ALIASES = {
    "Cryptocurrency": "Crypto",
}

# Float tolerance for money comparisons
EPSILON = 1e-9


def normalize_market_type(market_type: str) -> str:
    return MARKET_TYPE_ALIASES.get(market_type, market_type)


def leverage_for(market_type: str) -> float:
    """Leverage ratio for an asset class, 1.0 when the class is unknown."""
    return float(LEVERAGE_TABLE.get(normalize_market_type(market_type), DEFAULT_LEVERAGE))


def margin_required(market_type: str, total_amount: float) -> float:
    """Margin locked by a position: ``total_amount / leverage``."""
    return total_amount / leverage_for(market_type)


def fee(total_amount: float, rate: float | None = None) -> float:
    """Trading fee on the position value."""
    if rate is None:
        rate = settings.fee_rate
    return total_amount * rate


def affordable(account, margin: float) -> bool:
    """True when ``account.available_funds`` covers ``margin``."""
    return account.available_funds + EPSILON >= margin


def max_position_units(market_type: str, available_funds: float, price: float) -> float:
    """Largest unit count the available funds can margin at ``price``."""
    if price <= 0:
        return 0.0
    return max(0.0, available_funds) * leverage_for(market_type) / price


def margin_level(equity: float, used_margin: float) -> float:
    """Equity as a percentage of used margin. 100 when nothing is margined."""
    if used_margin <= 0:
        return 100.0
    return equity / used_margin * 100


def position_pnl(trade_type: str, entry_price: float, exit_price: float, units: float) -> float:
    """Realized P&L of closing ``units`` opened at ``entry_price``."""
    if trade_type == "buy":
        return (exit_price - entry_price) * units
    return (entry_price - exit_price) * units


@dataclass
class MarginQuote:
    """Pre-trade breakdown shown before an order is submitted."""

    market_type: str
    units: float
    price: float
    total_amount: float
    leverage: float
    margin_required: float
    fee: float
    total_cost: float  # margin + fee
    available_funds: float
    affordable: bool
    max_units: float

    def to_dict(self) -> dict:
        return {
            "market_type": self.market_type,
            "units": self.units,
            "price": self.price,
            "total_amount": self.total_amount,
            "leverage": self.leverage,
            "margin_required": self.margin_required,
            "fee": self.fee,
            "total_cost": self.total_cost,
            "available_funds": self.available_funds,
            "affordable": self.affordable,
            "max_units": self.max_units,
        }


def quote_order(market_type: str, units: float, price: float, available_funds: float) -> MarginQuote:
    total_amount = units * price
    margin = margin_required(market_type, total_amount)
    trade_fee = fee(total_amount)
    return MarginQuote(
        market_type=normalize_market_type(market_type),
        units=units,
        price=price,
        total_amount=total_amount,
        leverage=leverage_for(market_type),
        margin_required=margin,
        fee=trade_fee,
        total_cost=margin + trade_fee,
        available_funds=available_funds,
        affordable=available_funds + EPSILON >= margin,
        max_units=max_position_units(market_type, available_funds, price),
    )
