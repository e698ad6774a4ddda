"""Market calendar: trading hours per asset class.

Stocks follow the NYSE session (Eastern time, holidays excluded). Forex,
indices and commodities trade 24/5 from Sunday 21:00 UTC to Friday 21:00 UTC.
Crypto never closes. All internal logic in UTC.
"""

import logging
from datetime import datetime, time, timedelta, timezone
from typing import NamedTuple

from zoneinfo import ZoneInfo

from margindesk.services.margin import normalize_market_type

logger = logging.getLogger(__name__)

TZ_UTC = timezone.utc
TZ_US_EASTERN = ZoneInfo("US/Eastern")  # Handles EST/EDT automatically

# Known NYSE holidays (date only). Doesn't cover half-days.
US_HOLIDAYS_2026 = {
    datetime(2026, 1, 1).date(),   # New Year's Day
    datetime(2026, 1, 19).date(),  # MLK Day
    datetime(2026, 2, 16).date(),  # Presidents' Day
    datetime(2026, 4, 3).date(),   # Good Friday
    datetime(2026, 5, 25).date(),  # Memorial Day
    datetime(2026, 6, 19).date(),  # Juneteenth
    datetime(2026, 7, 3).date(),   # Independence Day (observed)
    datetime(2026, 9, 7).date(),   # Labor Day
    datetime(2026, 11, 26).date(), # Thanksgiving
    datetime(2026, 12, 25).date(), # Christmas
}


class MarketSession(NamedTuple):
    """A daily trading session with open/close times in local timezone."""

    open_time: time
    close_time: time
    tz: ZoneInfo
    trading_days: tuple[int, ...]  # 0=Monday, 6=Sunday


STOCKS_SESSION = MarketSession(
    open_time=time(9, 30),   # 09:30 ET
    close_time=time(16, 0),  # 16:00 ET
    tz=TZ_US_EASTERN,
    trading_days=(0, 1, 2, 3, 4),
)

# 24/5 week boundaries (UTC)
WEEK_OPEN_HOUR_UTC = 21   # Sunday
WEEK_CLOSE_HOUR_UTC = 21  # Friday

ROUND_THE_CLOCK = {"Crypto"}
TWENTY_FOUR_FIVE = {"Forex", "Indices", "Commodities"}


def _stocks_open(at_utc: datetime) -> bool:
    local_dt = at_utc.astimezone(STOCKS_SESSION.tz)
    if local_dt.weekday() not in STOCKS_SESSION.trading_days:
        return False
    if local_dt.date() in US_HOLIDAYS_2026:
        return False
    return STOCKS_SESSION.open_time <= local_dt.time() < STOCKS_SESSION.close_time


def _twenty_four_five_open(at_utc: datetime) -> bool:
    utc_dt = at_utc.astimezone(TZ_UTC)
    day = utc_dt.weekday()
    if day == 5:  # Saturday
        return False
    if day == 6 and utc_dt.hour < WEEK_OPEN_HOUR_UTC:
        return False
    if day == 4 and utc_dt.hour >= WEEK_CLOSE_HOUR_UTC:
        return False
    return True


def is_market_open(market_type: str, at_utc: datetime | None = None) -> bool:
    """Check if an asset class is tradable at ``at_utc`` (defaults to now).

    Unknown asset classes follow the 24/5 schedule.
    """
    if at_utc is None:
        at_utc = datetime.now(TZ_UTC)

    market_type = normalize_market_type(market_type)
    if market_type in ROUND_THE_CLOCK:
        return True
    if market_type == "Stocks":
        return _stocks_open(at_utc)
    return _twenty_four_five_open(at_utc)


def next_open(market_type: str, after_utc: datetime | None = None) -> datetime:
    """Next time the asset class opens, in UTC. Returns ``after_utc`` if open."""
    if after_utc is None:
        after_utc = datetime.now(TZ_UTC)
    if is_market_open(market_type, after_utc):
        return after_utc

    if normalize_market_type(market_type) == "Stocks":
        local_dt = after_utc.astimezone(STOCKS_SESSION.tz)
        candidate = local_dt.replace(
            hour=STOCKS_SESSION.open_time.hour,
            minute=STOCKS_SESSION.open_time.minute,
            second=0, microsecond=0,
        )
        if local_dt.time() >= STOCKS_SESSION.open_time:
            candidate += timedelta(days=1)
        while (
            candidate.weekday() not in STOCKS_SESSION.trading_days
            or candidate.date() in US_HOLIDAYS_2026
        ):
            candidate += timedelta(days=1)
        return candidate.astimezone(TZ_UTC)

    # 24/5 markets reopen Sunday 21:00 UTC
    utc_dt = after_utc.astimezone(TZ_UTC)
    days_to_sunday = (6 - utc_dt.weekday()) % 7
    return utc_dt.replace(
        hour=WEEK_OPEN_HOUR_UTC, minute=0, second=0, microsecond=0
    ) + timedelta(days=days_to_sunday)
