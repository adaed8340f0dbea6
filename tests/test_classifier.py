"""Tests for strategy classification."""

import datetime as dt

import pytest

from conftest import option_leg, stock_leg
from tradeledger.positions.classifier import classify_strategy

JUNE = dt.date(2024, 6, 21)


def call(action, strike, effect="open", expiry=dt.date(2024, 3, 15)):
    return option_leg(0, action, effect, 1, 1.0, option_type="call", strike=strike, expiry=expiry)


def put(action, strike, effect="open", expiry=dt.date(2024, 3, 15)):
    return option_leg(0, action, effect, 1, 1.0, option_type="put", strike=strike, expiry=expiry)


class TestSingleLeg:
    """One option leg, possibly with stock."""

    def test_stock_only(self):
        assert classify_strategy([stock_leg(0, "buy", "open", 100, 10.0)]) == "stock"

    @pytest.mark.parametrize("leg,expected", [
        (call("buy", 150), "long call"),
        (put("buy", 150), "long put"),
        (call("sell", 150), "short call"),
        (put("sell", 150), "cash-secured put"),
    ])
    def test_single_option(self, leg, expected):
        assert classify_strategy([leg]) == expected

    def test_covered_call(self):
        legs = [stock_leg(0, "buy", "open", 100, 140.0), call("sell", 150)]
        assert classify_strategy(legs) == "covered call"

    def test_closing_only_trade_uses_closing_legs(self):
        assert classify_strategy([put("buy", 150, effect="close")]) == "cash-secured put"

    def test_opening_legs_take_precedence(self):
        legs = [put("buy", 150, effect="close"), call("buy", 160)]
        assert classify_strategy(legs) == "long call"


class TestMultiLeg:
    """Spreads, straddles and condors."""

    @pytest.mark.parametrize("legs,expected", [
        ([put("sell", 150), put("buy", 140)], "bull put spread"),
        ([put("buy", 150), put("sell", 140)], "bear put spread"),
        ([call("sell", 150), call("buy", 160)], "bear call spread"),
        ([call("buy", 150), call("sell", 160)], "bull call spread"),
    ])
    def test_verticals(self, legs, expected):
        assert classify_strategy(legs) == expected

    def test_straddle(self):
        assert classify_strategy([call("buy", 150), put("buy", 150)]) == "straddle"

    def test_strangle(self):
        assert classify_strategy([call("sell", 160), put("sell", 140)]) == "strangle"

    def test_iron_condor(self):
        legs = [put("buy", 130), put("sell", 140), call("sell", 160), call("buy", 170)]
        assert classify_strategy(legs) == "iron condor"

    def test_calendar_is_custom(self):
        legs = [call("sell", 150), call("buy", 150, expiry=JUNE)]
        assert classify_strategy(legs) == "custom"

    def test_same_direction_pair_is_custom(self):
        assert classify_strategy([call("buy", 150), call("buy", 160)]) == "custom"

    def test_three_legs_is_custom(self):
        legs = [call("buy", 150), call("sell", 160), call("sell", 170)]
        assert classify_strategy(legs) == "custom"
