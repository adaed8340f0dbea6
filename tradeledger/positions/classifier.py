"""Name an options strategy from the legs of one trade."""

from typing import Iterable

from tradeledger.database.models import OptionType, PositionEffect, TradeAction
from tradeledger.positions.legs import TradeLeg

STOCK = "stock"
CUSTOM = "custom"


def _vertical(sold: TradeLeg, bought: TradeLeg) -> str:
    if sold.strike is None or bought.strike is None:
        return CUSTOM
    if sold.option_type == OptionType.PUT:
        # Selling the higher put collects a credit
        return "bull put spread" if sold.strike > bought.strike else "bear put spread"
    return "bear call spread" if sold.strike < bought.strike else "bull call spread"


def classify_strategy(legs: Iterable[TradeLeg]) -> str:
    """
    Classify a trade by its legs.

    Opening legs decide the strategy when there are any; a trade that only
    closes is classified by its closing legs.

    Returns:
        One of ``stock``, ``long call``, ``long put``, ``short call``,
        ``covered call``, ``cash-secured put``, the four vertical spreads,
        ``iron condor``, ``straddle``, ``strangle`` or ``custom``.
    """
    legs = list(legs)
    opening = [leg for leg in legs if leg.position_effect == PositionEffect.OPEN]
    considered = opening or legs

    options = [leg for leg in considered if leg.is_option]
    stock = [leg for leg in considered if not leg.is_option]
    if not options:
        return STOCK

    # Closing legs act in reverse of how the position was opened
    def opened_long(leg: TradeLeg) -> bool:
        buying = leg.action == TradeAction.BUY
        return buying if leg.position_effect == PositionEffect.OPEN else not buying

    calls = [leg for leg in options if leg.option_type == OptionType.CALL]
    puts = [leg for leg in options if leg.option_type == OptionType.PUT]

    if len(options) == 1:
        leg = options[0]
        if opened_long(leg):
            return f"long {leg.option_type.value}"
        if leg.option_type == OptionType.PUT:
            return "cash-secured put"
        holds_shares = any(opened_long(s) for s in stock)
        return "covered call" if holds_shares else "short call"

    if len(options) == 2:
        first, second = options
        if first.option_type == second.option_type:
            if opened_long(first) == opened_long(second):
                return CUSTOM
            sold, bought = (second, first) if opened_long(first) else (first, second)
            if sold.expiry != bought.expiry:
                return CUSTOM
            return _vertical(sold, bought)
        if opened_long(first) == opened_long(second):
            same_strike = first.strike is not None and first.strike == second.strike
            return "straddle" if same_strike else "strangle"
        return CUSTOM

    if len(options) == 4 and len(calls) == 2 and len(puts) == 2:
        if all(
            sum(1 for leg in group if opened_long(leg)) == 1
            for group in (calls, puts)
        ):
            return "iron condor"

    return CUSTOM
