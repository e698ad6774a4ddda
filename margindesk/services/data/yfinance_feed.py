"""yfinance quote feed for stocks, indices, commodities and forex.

Free tier has 15-min delay on some exchanges. No authentication required.
"""

import asyncio
import logging
import time

import yfinance as yf

from margindesk.config import settings

logger = logging.getLogger(__name__)


def to_yahoo_symbol(symbol: str, market_type: str | None = None) -> str:
    """Map a platform symbol onto Yahoo's ticker scheme.

    Forex pairs are quoted as ``EURUSD=X``; everything else passes through.
    """
    symbol = symbol.upper()
    if market_type == "Forex" and "=" not in symbol:
        return f"{symbol.replace('/', '')}=X"
    return symbol


class YFinanceFeed:
    """Pull last prices from yfinance with a per-symbol TTL cache."""

    def __init__(self, ttl_seconds: int | None = None) -> None:
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.quote_cache_ttl_seconds
        self._cache: dict[str, tuple[float, float]] = {}

    def _cached(self, ticker: str) -> float | None:
        hit = self._cache.get(ticker)
        if hit and (time.monotonic() - hit[1]) < self._ttl:
            return hit[0]
        return None

    def _fetch(self, ticker: str) -> float | None:
        """Synchronous fetch of one ticker's last price."""
        try:
            info = yf.Ticker(ticker).fast_info
            last_price = float(info.get("lastPrice", 0) or 0)
        except Exception as e:
            logger.warning("Failed to fetch %s: %s", ticker, e)
            return None
        if last_price <= 0:
            return None
        self._cache[ticker] = (last_price, time.monotonic())
        return last_price

    async def get_quote(self, symbol: str, market_type: str | None = None) -> float | None:
        ticker = to_yahoo_symbol(symbol, market_type)
        cached = self._cached(ticker)
        if cached is not None:
            return cached
        return await asyncio.to_thread(self._fetch, ticker)
