"""Quote source: the engine's only view of market data.

``MarketQuoteSource`` routes crypto symbols to CCXT and everything else to
yfinance. Quotes are shared between the API process and Celery workers through
a short-lived Redis cache; when Redis is down the feeds' own in-memory caches
still apply.
"""

import logging
import math
from typing import Protocol

import redis.asyncio as aioredis

from margindesk.config import settings
from margindesk.services.data.ccxt_feed import CCXTFeed
from margindesk.services.data.yfinance_feed import YFinanceFeed
from margindesk.services.margin import normalize_market_type

logger = logging.getLogger(__name__)

REDIS_KEY_QUOTE_PREFIX = "margindesk:quote:"


class QuoteUnavailable(Exception):
    """No feed could price the symbol."""


class QuoteSource(Protocol):
    async def get_quote(self, symbol: str, market_type: str | None = None) -> float:
        ...


class MarketQuoteSource:
    """Live quotes from CCXT (crypto) and yfinance (everything else)."""

    def __init__(
        self,
        crypto_feed: CCXTFeed | None = None,
        stock_feed: YFinanceFeed | None = None,
        redis_url: str | None = None,
    ) -> None:
        self._crypto = crypto_feed or CCXTFeed()
        self._stocks = stock_feed or YFinanceFeed()
        self._redis_url = redis_url if redis_url is not None else settings.redis_url
        self._redis: aioredis.Redis | None = None

    async def _get_redis(self) -> aioredis.Redis | None:
        if not self._redis_url:
            return None
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url, decode_responses=True, max_connections=5,
            )
        return self._redis

    async def _read_shared(self, key: str) -> float | None:
        try:
            r = await self._get_redis()
            if r is None:
                return None
            raw = await r.get(key)
            price = float(raw) if raw else None
            return price if price is not None and math.isfinite(price) and price > 0 else None
        except Exception as e:
            logger.warning("Redis quote cache read failed: %s", e)
            return None

    async def _write_shared(self, key: str, price: float) -> None:
        try:
            r = await self._get_redis()
            if r is None:
                return
            await r.set(key, repr(price), ex=settings.quote_cache_ttl_seconds)
        except Exception as e:
            logger.warning("Redis quote cache write failed: %s", e)

    async def get_quote(self, symbol: str, market_type: str | None = None) -> float:
        """Current price for ``symbol``. Raises ``QuoteUnavailable``."""
        symbol = symbol.upper()
        key = f"{REDIS_KEY_QUOTE_PREFIX}{symbol}"
        shared = await self._read_shared(key)
        if shared is not None:
            return shared

        is_crypto = market_type is not None and normalize_market_type(market_type) == "Crypto"
        if is_crypto:
            price = await self._crypto.get_quote(symbol)
        else:
            price = await self._stocks.get_quote(symbol, market_type)
            if price is None and market_type is None:
                # Unknown asset class: crypto tickers don't resolve on Yahoo
                price = await self._crypto.get_quote(symbol)

        if price is None or not math.isfinite(price) or price <= 0:
            raise QuoteUnavailable(f"No quote available for {symbol}")

        await self._write_shared(key, price)
        return price

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
