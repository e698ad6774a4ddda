"""CCXT quote feed for crypto symbols.

Uses CCXT public ticker endpoints; no authentication required for market data.
"""

import asyncio
import logging
import time

import ccxt

from margindesk.config import settings

logger = logging.getLogger(__name__)

QUOTE_CURRENCIES = ("USDT", "USD")


class CCXTFeed:
    """Last-trade prices for crypto symbols (``BTC``, ``ETH``...).

    Tries Binance first, falls back to Kraken. Keeps a per-symbol in-memory
    cache so repeated lookups inside the TTL don't hit exchange rate limits.
    """

    def __init__(self, ttl_seconds: int | None = None) -> None:
        self._exchange: ccxt.Exchange | None = None
        self._initialized: bool = False
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.quote_cache_ttl_seconds
        self._cache: dict[str, tuple[float, float]] = {}  # symbol -> (price, monotonic time)

    def _init_exchange(self) -> None:
        """Lazy init: try Binance, fall back to Kraken."""
        if self._initialized:
            return

        for exchange_id in ("binance", "kraken"):
            try:
                exchange = getattr(ccxt, exchange_id)({"enableRateLimit": True, "timeout": 10000})
                exchange.load_markets()
                self._exchange = exchange
                logger.info("CCXT: Using %s", exchange_id)
                break
            except Exception as e:
                logger.warning("CCXT %s unavailable: %s", exchange_id, e)

        self._initialized = True

    def _cached(self, symbol: str) -> float | None:
        hit = self._cache.get(symbol)
        if hit and (time.monotonic() - hit[1]) < self._ttl:
            return hit[0]
        return None

    def _fetch(self, symbol: str) -> float | None:
        """Synchronous ticker fetch; tries each quote currency pair."""
        self._init_exchange()
        if not self._exchange:
            return None

        for quote in QUOTE_CURRENCIES:
            pair = f"{symbol}/{quote}"
            if pair not in self._exchange.markets:
                continue
            try:
                ticker = self._exchange.fetch_ticker(pair)
            except Exception as e:
                logger.warning("Failed to fetch %s: %s", pair, e)
                continue
            last = ticker.get("last")
            if last:
                price = float(last)
                self._cache[symbol] = (price, time.monotonic())
                return price
        return None

    async def get_quote(self, symbol: str) -> float | None:
        """Current price for ``symbol``, or None if no exchange quotes it."""
        symbol = symbol.upper()
        cached = self._cached(symbol)
        if cached is not None:
            return cached
        # ccxt is synchronous, run in a thread to avoid blocking the event loop
        return await asyncio.to_thread(self._fetch, symbol)
