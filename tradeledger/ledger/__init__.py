"""Double-entry ledger: chart of accounts, posting engine and reports."""

from .lines import JournalLine, LineBuilder, check_balanced, credit, debit
from .chart_of_accounts import (
    TRADING_ACCOUNTS,
    ChartOfAccounts,
    gain_loss_account,
    position_account,
    seed_chart_of_accounts,
    strategy_family,
)
from .reports import account_activity, trial_balance, verify_balances
from .posting import CommitResult, JournalSummary, LedgerPostingEngine

__all__ = [
    "JournalLine",
    "LineBuilder",
    "check_balanced",
    "credit",
    "debit",
    "TRADING_ACCOUNTS",
    "ChartOfAccounts",
    "gain_loss_account",
    "position_account",
    "seed_chart_of_accounts",
    "strategy_family",
    "account_activity",
    "trial_balance",
    "verify_balances",
    "CommitResult",
    "JournalSummary",
    "LedgerPostingEngine",
]
