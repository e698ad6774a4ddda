"""Tests for per-asset-class trading hours."""

from datetime import datetime, timezone

from margindesk.services.data.market_calendar import is_market_open, next_open


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestStocks:
    def test_open_midday(self):
        # 12:00 EDT
        assert is_market_open("Stocks", utc(2026, 3, 11, 16, 0)) is True

    def test_closed_before_bell(self):
        # 09:00 EDT
        assert is_market_open("Stocks", utc(2026, 3, 11, 13, 0)) is False

    def test_closed_on_holiday(self):
        # Thanksgiving, 12:00 EST
        assert is_market_open("Stocks", utc(2026, 11, 26, 17, 0)) is False

    def test_next_open_after_weekend(self):
        saturday = utc(2026, 3, 14, 16, 0)
        # Monday 09:30 EDT
        assert next_open("Stocks", saturday) == utc(2026, 3, 16, 13, 30)


class TestTwentyFourFive:
    def test_forex_open_friday_afternoon(self):
        assert is_market_open("Forex", utc(2026, 3, 13, 20, 59)) is True

    def test_forex_closed_friday_night(self):
        assert is_market_open("Forex", utc(2026, 3, 13, 21, 0)) is False

    def test_forex_closed_saturday(self):
        assert is_market_open("Indices", utc(2026, 3, 14, 12, 0)) is False

    def test_reopens_sunday_evening(self):
        assert is_market_open("Commodities", utc(2026, 3, 15, 21, 0)) is True
        assert next_open("Forex", utc(2026, 3, 14, 12, 0)) == utc(2026, 3, 15, 21, 0)

    def test_unknown_class_follows_twenty_four_five(self):
        assert is_market_open("Bonds", utc(2026, 3, 14, 12, 0)) is False


def test_crypto_never_closes():
    assert is_market_open("Crypto", utc(2026, 3, 14, 3, 0)) is True
    assert is_market_open("Cryptocurrency", utc(2026, 12, 25, 12, 0)) is True
