"""Ledger reports derived from the entry stream."""

import logging
from typing import Any

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from tradeledger.database.models import Account, EntrySide, JournalTransaction, LedgerEntry
from tradeledger.ledger.chart_of_accounts import ChartOfAccounts
from tradeledger.utils.money import cents_to_dollars

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = ["account_id", "side", "amount"]


def _entry_totals(session: Session) -> pd.DataFrame:
    """Debit and credit totals per account id, in cents."""
    rows = session.execute(select(LedgerEntry.account_id, LedgerEntry.side, LedgerEntry.amount)).all()
    entries = pd.DataFrame(
        [(account_id, side.value, amount) for account_id, side, amount in rows],
        columns=_ENTRY_COLUMNS,
    )
    if entries.empty:
        return pd.DataFrame(columns=["debits", "credits"], dtype="int64")

    totals = entries.pivot_table(
        index="account_id", columns="side", values="amount", aggfunc="sum", fill_value=0
    )
    return pd.DataFrame({
        "debits": totals.get(EntrySide.DEBIT.value, 0),
        "credits": totals.get(EntrySide.CREDIT.value, 0),
    }, index=totals.index).astype("int64")


def _derived_balance(account: Account, debits: int, credits: int) -> int:
    if account.normal_side == EntrySide.DEBIT:
        return debits - credits
    return credits - debits


def trial_balance(session: Session, include_empty: bool = False) -> dict[str, Any]:
    """
    Per-account debit and credit totals from posted entries.

    Returns:
        Dict with one row per account (debits, credits, derived balance,
        cached running balance), grand totals and a ``balanced`` flag.
    """
    totals = _entry_totals(session)
    accounts = list(session.scalars(select(Account).order_by(Account.code)))

    rows = []
    total_debits = total_credits = 0
    for account in accounts:
        if account.id in totals.index:
            debits = int(totals.at[account.id, "debits"])
            credits = int(totals.at[account.id, "credits"])
        else:
            debits = credits = 0
        if not include_empty and not debits and not credits and not account.settled_balance:
            continue

        total_debits += debits
        total_credits += credits
        rows.append({
            "code": account.code,
            "name": account.name,
            "type": account.account_type.value,
            "normal_side": account.normal_side.value,
            "debits": cents_to_dollars(debits),
            "credits": cents_to_dollars(credits),
            "balance": cents_to_dollars(_derived_balance(account, debits, credits)),
            "settled_balance": cents_to_dollars(account.settled_balance),
        })

    return {
        "accounts": rows,
        "total_debits": cents_to_dollars(total_debits),
        "total_credits": cents_to_dollars(total_credits),
        "balanced": total_debits == total_credits,
    }


def account_activity(session: Session, code: str) -> list[dict[str, Any]]:
    """
    Audit trail for one account with a running balance after each entry.

    Raises:
        UnknownAccountError: If the code is not in the chart
    """
    account = ChartOfAccounts(session).get(code)
    stmt = (
        select(LedgerEntry, JournalTransaction)
        .join(JournalTransaction, LedgerEntry.journal_id == JournalTransaction.id)
        .where(LedgerEntry.account_id == account.id)
        .order_by(JournalTransaction.date, JournalTransaction.id, LedgerEntry.line_number)
    )

    activity = []
    running = 0
    for entry, journal in session.execute(stmt):
        signed = entry.amount if entry.side == account.normal_side else -entry.amount
        running += signed
        activity.append({
            "journal_id": journal.id,
            "date": journal.date.isoformat(),
            "description": journal.description,
            "trade_num": journal.trade_num,
            "reverses_journal_id": journal.reverses_journal_id,
            "side": entry.side.value,
            "amount": cents_to_dollars(entry.amount),
            "running_balance": cents_to_dollars(running),
        })
    return activity


def verify_balances(session: Session) -> list[dict[str, Any]]:
    """Accounts whose cached running balance differs from the entry stream."""
    totals = _entry_totals(session)
    drifted = []
    for account in session.scalars(select(Account).order_by(Account.code)):
        if account.id in totals.index:
            expected = _derived_balance(
                account,
                int(totals.at[account.id, "debits"]),
                int(totals.at[account.id, "credits"]),
            )
        else:
            expected = 0
        if expected != account.settled_balance:
            drifted.append({
                "code": account.code,
                "settled_balance": account.settled_balance,
                "expected_balance": expected,
                "difference": account.settled_balance - expected,
            })

    if drifted:
        logger.warning(f"{len(drifted)} account balance(s) drifted from the entry stream")
    return drifted
