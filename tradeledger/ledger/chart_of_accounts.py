"""Trading chart of accounts and account selection rules."""

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from tradeledger.database.models import (
    Account,
    AccountType,
    EntrySide,
    OptionType,
    PositionType,
)
from tradeledger.errors import UnknownAccountError

logger = logging.getLogger(__name__)

CASH = "T-1010"
LONG_STOCK = "T-1100"
LONG_CALL = "T-1200"
LONG_PUT = "T-1210"
WASH_SALE_DEFERRED = "T-1500"
SHORT_CALL = "T-2100"
SHORT_PUT = "T-2110"
SHORT_STOCK = "T-2200"
STOCK_GAIN_SHORT_TERM = "T-4010"
STOCK_GAIN_LONG_TERM = "T-4020"
OPTION_GAIN_OTHER = "T-4140"
STOCK_LOSS_SHORT_TERM = "T-5010"
STOCK_LOSS_LONG_TERM = "T-5020"
OPTION_LOSS_OTHER = "T-5140"
COMMISSIONS = "T-6010"
OPTION_CONTRACT_FEES = "T-6020"

_A, _L, _E, _R, _X = (
    AccountType.ASSET,
    AccountType.LIABILITY,
    AccountType.EQUITY,
    AccountType.REVENUE,
    AccountType.EXPENSE,
)
_D, _C = EntrySide.DEBIT, EntrySide.CREDIT

# (code, name, type, normal side)
TRADING_ACCOUNTS: list[tuple[str, str, AccountType, EntrySide]] = [
    ("T-1010", "Trading Cash Account", _A, _D),
    ("T-1020", "Margin Account Cash", _A, _D),
    ("T-1100", "Stock Positions - Long", _A, _D),
    ("T-1200", "Options Positions - Long Calls", _A, _D),
    ("T-1210", "Options Positions - Long Puts", _A, _D),
    ("T-1220", "Options Positions - Call Spreads", _A, _D),
    ("T-1230", "Options Positions - Put Spreads", _A, _D),
    ("T-1240", "Options Positions - Iron Condors", _A, _D),
    ("T-1250", "Options Positions - Straddles/Strangles", _A, _D),
    ("T-1300", "Cryptocurrency Holdings", _A, _D),
    ("T-1400", "Unrealized Gains (Mark-to-Market)", _A, _D),
    ("T-1500", "Deferred Loss - Wash Sale", _A, _D),
    ("T-2010", "Margin Loan Payable", _L, _C),
    ("T-2100", "Options Positions - Short Calls", _L, _C),
    ("T-2110", "Options Positions - Short Puts", _L, _C),
    ("T-2200", "Stock Positions - Short", _L, _C),
    ("T-2300", "Unrealized Losses (Mark-to-Market)", _L, _C),
    ("T-3010", "Trading Capital", _E, _C),
    ("T-3100", "Retained Earnings - Trading", _E, _C),
    ("T-3200", "Capital Contributions - Trading", _E, _C),
    ("T-3300", "Capital Withdrawals - Trading", _E, _D),
    ("T-4010", "Stock Trading Gains - Short Term", _R, _C),
    ("T-4020", "Stock Trading Gains - Long Term", _R, _C),
    ("T-4100", "Options Income - Credit Spreads", _R, _C),
    ("T-4110", "Options Income - Iron Condors", _R, _C),
    ("T-4120", "Options Income - Covered Calls", _R, _C),
    ("T-4130", "Options Income - Cash Secured Puts", _R, _C),
    ("T-4140", "Options Income - Other Strategies", _R, _C),
    ("T-4200", "Cryptocurrency Gains", _R, _C),
    ("T-4300", "Dividend Income - Trading", _R, _C),
    ("T-4400", "Interest Income - Trading", _R, _C),
    ("T-4500", "Mark-to-Market Adjustment - Gains", _R, _C),
    ("T-5010", "Stock Trading Losses - Short Term", _X, _D),
    ("T-5020", "Stock Trading Losses - Long Term", _X, _D),
    ("T-5100", "Options Losses - Debit Spreads", _X, _D),
    ("T-5110", "Options Losses - Credit Spreads", _X, _D),
    ("T-5120", "Options Losses - Iron Condors", _X, _D),
    ("T-5130", "Options Losses - Straddles/Strangles", _X, _D),
    ("T-5140", "Options Losses - Other Strategies", _X, _D),
    ("T-5200", "Cryptocurrency Losses", _X, _D),
    ("T-5300", "Mark-to-Market Adjustment - Losses", _X, _D),
    ("T-6010", "Brokerage Commissions", _X, _D),
    ("T-6020", "Options Contract Fees", _X, _D),
    ("T-6030", "Exchange Fees", _X, _D),
    ("T-6040", "Regulatory Fees (SEC, FINRA)", _X, _D),
    ("T-6050", "Margin Interest Expense", _X, _D),
    ("T-6100", "Market Data Subscriptions", _X, _D),
    ("T-6110", "Trading Software & Tools", _X, _D),
    ("T-6120", "Charting & Analysis Software", _X, _D),
    ("T-6200", "Trading Education & Courses", _X, _D),
    ("T-6300", "Professional Fees - Trading CPA", _X, _D),
    ("T-6400", "Computer & Equipment - Trading", _X, _D),
    ("T-6500", "Home Office - Trading Allocation", _X, _D),
]

# Strategy families -> (gain account, loss account)
_STRATEGY_ACCOUNTS = {
    "credit spread": ("T-4100", "T-5110"),
    "iron condor": ("T-4110", "T-5120"),
    "covered call": ("T-4120", OPTION_LOSS_OTHER),
    "cash secured put": ("T-4130", OPTION_LOSS_OTHER),
    "debit spread": (OPTION_GAIN_OTHER, "T-5100"),
    "straddle": (OPTION_GAIN_OTHER, "T-5130"),
}

_STRATEGY_ALIASES = {
    "bull put spread": "credit spread",
    "bear call spread": "credit spread",
    "put credit spread": "credit spread",
    "call credit spread": "credit spread",
    "bull call spread": "debit spread",
    "bear put spread": "debit spread",
    "call debit spread": "debit spread",
    "put debit spread": "debit spread",
    "strangle": "straddle",
    "csp": "cash secured put",
}


def strategy_family(strategy: Optional[str]) -> Optional[str]:
    """Normalize a free-form strategy tag to one of the account families."""
    if not strategy:
        return None
    key = " ".join(strategy.lower().replace("_", " ").replace("-", " ").split())
    key = _STRATEGY_ALIASES.get(key, key)
    return key if key in _STRATEGY_ACCOUNTS else None


def position_account(option_type: Optional[OptionType], position_type: PositionType) -> str:
    """Balance-sheet account that carries a lot's basis."""
    long = position_type == PositionType.LONG
    if option_type is None:
        return LONG_STOCK if long else SHORT_STOCK
    if option_type == OptionType.CALL:
        return LONG_CALL if long else SHORT_CALL
    return LONG_PUT if long else SHORT_PUT


def gain_loss_account(
    is_option: bool,
    is_gain: bool,
    is_long_term: bool = False,
    strategy: Optional[str] = None,
) -> str:
    """Income or loss account for a realized result."""
    if not is_option:
        if is_gain:
            return STOCK_GAIN_LONG_TERM if is_long_term else STOCK_GAIN_SHORT_TERM
        return STOCK_LOSS_LONG_TERM if is_long_term else STOCK_LOSS_SHORT_TERM

    gain_code, loss_code = _STRATEGY_ACCOUNTS.get(
        strategy_family(strategy), (OPTION_GAIN_OTHER, OPTION_LOSS_OTHER)
    )
    return gain_code if is_gain else loss_code


def seed_chart_of_accounts(session: Session) -> int:
    """Insert any trading accounts not present yet. Returns how many were added."""
    existing = set(session.scalars(select(Account.code)))
    added = 0
    for code, name, account_type, normal_side in TRADING_ACCOUNTS:
        if code in existing:
            continue
        session.add(Account(
            code=code,
            name=name,
            account_type=account_type,
            normal_side=normal_side,
            settled_balance=0,
        ))
        added += 1

    if added:
        session.flush()
    logger.info(f"Seeded {added} trading accounts ({len(TRADING_ACCOUNTS)} in chart)")
    return added


class ChartOfAccounts:
    """Read-only account lookup within one unit of work."""

    def __init__(self, session: Session):
        self.session = session
        self._cache: dict[str, Account] = {}

    def get(self, code: str) -> Account:
        """
        Look up one account.

        Raises:
            UnknownAccountError: If the code is not in the chart
        """
        return self.require([code])[code]

    def require(self, codes: Iterable[str]) -> dict[str, Account]:
        """
        Look up several accounts at once, reporting every missing code.

        Raises:
            UnknownAccountError: If any code is not in the chart
        """
        wanted = list(dict.fromkeys(codes))
        missing = [c for c in wanted if c not in self._cache]
        if missing:
            for account in self.session.scalars(select(Account).where(Account.code.in_(missing))):
                self._cache[account.code] = account

        unknown = [c for c in wanted if c not in self._cache]
        if unknown:
            raise UnknownAccountError(unknown)
        return {c: self._cache[c] for c in wanted}

    def exists(self, code: str) -> bool:
        try:
            self.get(code)
        except UnknownAccountError:
            return False
        return True
