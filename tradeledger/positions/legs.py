"""
Trade legs and their construction from imported transaction rows.

Structured fields on the imported row are always preferred. Parsing the
free-text name is a fallback only; legs built that way are flagged
``low_confidence``.
"""

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Optional

from tradeledger.database.models import (
    InvestmentTransaction,
    OptionType,
    PositionEffect,
    PositionType,
    TradeAction,
)
from tradeledger.errors import LegParseError
from tradeledger.utils.money import gross_cents, to_cents

logger = logging.getLogger(__name__)

DEFAULT_OPTION_MULTIPLIER = 100

_TICKER_RE = re.compile(r"^[A-Z]{1,5}$")
_STRIKE_RE = re.compile(r"\$?(\d+(?:\.\d+)?)\s*(call|put)\b", re.IGNORECASE)
_DOLLAR_STRIKE_RE = re.compile(r"\$(\d+(?:\.\d+)?)")
_SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_WORD_DATE_RE = re.compile(r"\b([A-Z][a-z]{2})\s+(\d{1,2}),?\s+(\d{4})\b")

# Upper-case words in broker descriptions that are never tickers
_NON_TICKERS = frozenset({
    "BUY", "SELL", "TO", "OPEN", "CLOSE", "CALL", "PUT", "BTO", "STO", "BTC", "STC",
    "OPTION", "SHARES", "SH", "OF", "AT", "THE", "A", "B", "S", "ASSIGNED", "EXERCISED",
    "EXPIRED", "ASSIGNMENT", "EXERCISE", "USD",
})


@dataclass
class TradeLeg:
    """One leg of a trade as the tracker consumes it."""
    date: dt.date
    symbol: str
    action: TradeAction
    position_effect: PositionEffect
    quantity: float
    price: float
    fees: float = 0.0  # dollars
    option_type: Optional[OptionType] = None
    strike: Optional[float] = None
    expiry: Optional[dt.date] = None
    multiplier: int = 1
    transaction_id: Optional[int] = None
    low_confidence: bool = False

    def __post_init__(self):
        self.symbol = self.symbol.upper()
        self.action = TradeAction(self.action)
        self.position_effect = PositionEffect(self.position_effect)
        if self.option_type is not None:
            self.option_type = OptionType(self.option_type)
        if self.quantity <= 0:
            raise LegParseError(f"Leg quantity must be positive, got {self.quantity}", leg=self)
        if self.price < 0 or self.fees < 0:
            raise LegParseError("Leg price and fees must not be negative", leg=self)

    @property
    def is_option(self) -> bool:
        return self.option_type is not None

    @property
    def position_type(self) -> PositionType:
        """Direction of the lot this leg opens or closes."""
        opening = self.position_effect == PositionEffect.OPEN
        buying = self.action == TradeAction.BUY
        return PositionType.LONG if opening == buying else PositionType.SHORT

    @property
    def gross_cents(self) -> int:
        return gross_cents(self.price, self.quantity, self.multiplier)

    @property
    def fee_cents(self) -> int:
        return to_cents(self.fees)

    def describe(self) -> str:
        verb = f"{self.action.value} to {self.position_effect.value}"
        if not self.is_option:
            return f"{verb} {self.quantity:g} sh {self.symbol} @ {self.price:g}"
        expiry = self.expiry.isoformat() if self.expiry else "?"
        strike = f"{self.strike:g}" if self.strike is not None else "?"
        return (
            f"{verb} {self.quantity:g} {self.symbol} {expiry} {strike} "
            f"{self.option_type.value.upper()} @ {self.price:g}"
        )


def parse_option_type(text: str) -> Optional[OptionType]:
    lowered = text.lower()
    if re.search(r"\bcall\b", lowered):
        return OptionType.CALL
    if re.search(r"\bput\b", lowered):
        return OptionType.PUT
    return None


def parse_strike(text: str) -> Optional[float]:
    match = _STRIKE_RE.search(text) or _DOLLAR_STRIKE_RE.search(text)
    return float(match.group(1)) if match else None


def parse_expiry(text: str) -> Optional[dt.date]:
    match = _SLASH_DATE_RE.search(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        try:
            return dt.date(year, month, day)
        except ValueError:
            return None
    match = _WORD_DATE_RE.search(text)
    if match:
        try:
            return dt.datetime.strptime(" ".join(match.groups()), "%b %d %Y").date()
        except ValueError:
            return None
    return None


def parse_ticker(text: str) -> Optional[str]:
    """First upper-case token that looks like a ticker."""
    for token in re.split(r"[\s,()]+", text):
        if _TICKER_RE.match(token) and token not in _NON_TICKERS:
            return token
    return None


def parse_position_effect(text: str) -> Optional[PositionEffect]:
    lowered = text.lower()
    if "to open" in lowered or re.search(r"\b(bto|sto)\b", lowered):
        return PositionEffect.OPEN
    if "to close" in lowered or re.search(r"\b(btc|stc)\b", lowered):
        return PositionEffect.CLOSE
    return None


def parse_action(text: str) -> Optional[TradeAction]:
    lowered = text.lower()
    if re.search(r"\b(buy|bought|bto|btc)\b", lowered):
        return TradeAction.BUY
    if re.search(r"\b(sell|sold|sto|stc)\b", lowered):
        return TradeAction.SELL
    return None


def _enum_value(enum_cls, value):
    if value is None:
        return None
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return None


def leg_from_transaction(
    txn: InvestmentTransaction,
    option_multiplier: int = DEFAULT_OPTION_MULTIPLIER,
) -> TradeLeg:
    """
    Build a trade leg from an imported row.

    Args:
        txn: Imported transaction row
        option_multiplier: Shares per option contract

    Returns:
        TradeLeg, flagged low-confidence when any field came from the name

    Raises:
        LegParseError: If action, position effect or symbol cannot be determined
    """
    name = txn.name or ""
    guessed = []

    action = _enum_value(TradeAction, txn.action) or _enum_value(TradeAction, txn.type)
    if action is None:
        action = parse_action(name)
        guessed.append("action")
    if action is None:
        raise LegParseError(f"Transaction {txn.id}: cannot determine buy/sell from {name!r}")

    effect = _enum_value(PositionEffect, txn.position_effect)
    if effect is None:
        effect = parse_position_effect(f"{txn.subtype or ''} {name}")
        guessed.append("position_effect")
    if effect is None:
        raise LegParseError(f"Transaction {txn.id}: cannot determine open/close from {name!r}")

    option_type = _enum_value(OptionType, txn.option_type)
    is_option = option_type is not None or (txn.security_type or "").lower() == "option"
    if option_type is None and (is_option or txn.security_type is None):
        option_type = parse_option_type(name)
        if option_type is not None:
            guessed.append("option_type")
    if is_option and option_type is None:
        raise LegParseError(f"Transaction {txn.id}: option row without call/put type")

    symbol = txn.underlying_symbol or (txn.ticker_symbol if option_type is None else None)
    if not symbol:
        symbol = parse_ticker(name)
        guessed.append("symbol")
    if not symbol:
        raise LegParseError(f"Transaction {txn.id}: cannot determine symbol from {name!r}")

    strike = txn.strike_price
    expiry = txn.expiration_date
    if option_type is not None:
        if strike is None:
            strike = parse_strike(name)
            guessed.append("strike")
        if expiry is None:
            expiry = parse_expiry(name)
            guessed.append("expiry")

    leg = TradeLeg(
        date=txn.date,
        symbol=symbol,
        action=action,
        position_effect=effect,
        quantity=abs(txn.quantity or 0),
        price=abs(txn.price or 0),
        fees=abs(txn.fees or 0),
        option_type=option_type,
        strike=strike,
        expiry=expiry,
        multiplier=option_multiplier if option_type is not None else 1,
        transaction_id=txn.id,
        low_confidence=bool(guessed),
    )

    if guessed:
        logger.warning(
            f"Transaction {txn.id}: inferred {', '.join(guessed)} from name {name!r}",
            extra={"transaction_id": txn.id, "inferred_fields": guessed},
        )

    return leg
