"""Tests for the leverage table and margin calculator."""

import pytest

from margindesk.models.account import Account
from margindesk.services.margin import (
    affordable,
    fee,
    leverage_for,
    margin_level,
    margin_required,
    max_position_units,
    position_pnl,
    quote_order,
)


class TestLeverage:
    @pytest.mark.parametrize(
        "market_type,leverage",
        [("Stocks", 20), ("Indices", 50), ("Commodities", 50), ("Forex", 100), ("Crypto", 50)],
    )
    def test_known_asset_classes(self, market_type, leverage):
        assert leverage_for(market_type) == leverage

    def test_cryptocurrency_alias(self):
        assert leverage_for("Cryptocurrency") == 50

    def test_unknown_class_is_unleveraged(self):
        assert leverage_for("Bonds") == 1.0
        assert margin_required("Bonds", 1234.5) == pytest.approx(1234.5)


class TestMarginRequired:
    def test_crypto(self):
        assert margin_required("Crypto", 50000) == pytest.approx(1000.0)

    def test_forex(self):
        assert margin_required("Forex", 108500) == pytest.approx(1085.0)

    def test_zero_amount(self):
        assert margin_required("Stocks", 0) == 0


class TestFee:
    def test_default_rate(self):
        assert fee(50000) == pytest.approx(50.0)

    def test_explicit_rate(self):
        assert fee(1000, rate=0.002) == pytest.approx(2.0)


class TestAffordability:
    def test_exact_match_is_affordable(self):
        account = Account(available_funds=1000.0)
        assert affordable(account, 1000.0) is True

    def test_one_cent_short(self):
        account = Account(available_funds=999.99)
        assert affordable(account, 1000.0) is False

    def test_max_units(self):
        assert max_position_units("Crypto", 10000, 50000) == pytest.approx(10.0)
        assert max_position_units("Crypto", -5, 50000) == 0
        assert max_position_units("Crypto", 10000, 0) == 0


class TestMarginLevel:
    def test_no_margin_in_use(self):
        assert margin_level(5000, 0) == 100.0

    def test_ratio(self):
        assert margin_level(1500, 1000) == pytest.approx(150.0)


class TestPositionPnl:
    def test_buy(self):
        assert position_pnl("buy", 50000, 51000, 1) == pytest.approx(1000.0)

    def test_sell(self):
        assert position_pnl("sell", 150, 140, 10) == pytest.approx(100.0)

    def test_sell_loss(self):
        assert position_pnl("sell", 1.08, 1.09, 100000) == pytest.approx(-1000.0)


class TestQuoteOrder:
    def test_breakdown(self):
        q = quote_order("Cryptocurrency", 1, 50000, 800)
        assert q.market_type == "Crypto"
        assert q.total_amount == pytest.approx(50000.0)
        assert q.leverage == 50
        assert q.margin_required == pytest.approx(1000.0)
        assert q.fee == pytest.approx(50.0)
        assert q.total_cost == pytest.approx(1050.0)
        assert q.affordable is False
        assert q.max_units == pytest.approx(0.8)
        assert q.to_dict()["affordable"] is False
