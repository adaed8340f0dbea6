"""Tests for the ledger posting engine."""

import datetime as dt
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from conftest import USER, option_leg, stock_leg
from tradeledger.database.models import (
    Account,
    JournalTransaction,
    LedgerEntry,
    LotDisposition,
    LotStatus,
    StockLot,
    TradingPosition,
)
from tradeledger.errors import (
    OrphanLegError,
    PostingImmutabilityError,
    TradeConflictError,
    TradeLedgerError,
    UnbalancedEntryError,
    UnknownAccountError,
)
from tradeledger.ledger.lines import credit, debit


def count(session_factory, model):
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(model))


def balance(session_factory, code):
    with session_factory() as session:
        return session.scalar(select(Account.settled_balance).where(Account.code == code))


class TestCreateJournalEntry:
    """Tests for posting plain journals."""

    def test_balanced_entry_is_posted(self, posting_engine, session_factory):
        summary = posting_engine.create_journal_entry(
            dt.date(2024, 1, 2),
            "Initial capital",
            [debit("T-1010", 1_000_000), credit("T-3010", 1_000_000)],
        )

        assert summary.id is not None
        assert summary.total == 1_000_000
        assert summary.posted_at is not None
        assert len(summary.lines) == 2
        assert balance(session_factory, "T-1010") == 1_000_000
        assert balance(session_factory, "T-3010") == 1_000_000

    def test_contra_side_lowers_balance(self, posting_engine, session_factory):
        posting_engine.create_journal_entry(
            dt.date(2024, 1, 2), "Deposit", [debit("T-1010", 5000), credit("T-3010", 5000)]
        )
        posting_engine.create_journal_entry(
            dt.date(2024, 1, 3), "Withdrawal", [debit("T-3300", 2000), credit("T-1010", 2000)]
        )

        assert balance(session_factory, "T-1010") == 3000

    def test_unbalanced_entry_rejected(self, posting_engine, session_factory):
        with pytest.raises(UnbalancedEntryError) as exc_info:
            posting_engine.create_journal_entry(
                dt.date(2024, 1, 2), "Bad", [debit("T-1010", 100), credit("T-3010", 99)]
            )

        assert exc_info.value.debits == 100
        assert exc_info.value.credits == 99
        assert count(session_factory, JournalTransaction) == 0

    def test_empty_entry_rejected(self, posting_engine):
        with pytest.raises(UnbalancedEntryError):
            posting_engine.create_journal_entry(dt.date(2024, 1, 2), "Empty", [])

    def test_non_positive_amount_rejected(self, posting_engine):
        with pytest.raises(UnbalancedEntryError):
            posting_engine.create_journal_entry(
                dt.date(2024, 1, 2), "Zero", [debit("T-1010", 0), credit("T-3010", 0)]
            )

    def test_unknown_accounts_reported_together(self, posting_engine, session_factory):
        with pytest.raises(UnknownAccountError) as exc_info:
            posting_engine.create_journal_entry(
                dt.date(2024, 1, 2),
                "Missing accounts",
                [debit("X-1", 100), credit("X-2", 100)],
            )

        assert exc_info.value.codes == ["X-1", "X-2"]
        assert count(session_factory, LedgerEntry) == 0

    def test_retries_on_version_conflict(self, posting_engine, session_factory):
        """A stale account version re-runs the whole unit of work."""
        real_post = posting_engine.post_within
        calls = []

        def flaky(session, **kwargs):
            calls.append(kwargs["description"])
            if len(calls) == 1:
                raise StaleDataError("account version changed")
            return real_post(session, **kwargs)

        with patch.object(posting_engine, "post_within", side_effect=flaky):
            posting_engine.create_journal_entry(
                dt.date(2024, 1, 2), "Deposit", [debit("T-1010", 500), credit("T-3010", 500)]
            )

        assert len(calls) == 2
        assert count(session_factory, JournalTransaction) == 1
        assert balance(session_factory, "T-1010") == 500


class TestImmutability:
    """Posted journals and entries cannot change."""

    def _post(self, posting_engine):
        return posting_engine.create_journal_entry(
            dt.date(2024, 1, 2), "Deposit", [debit("T-1010", 700), credit("T-3010", 700)]
        )

    def test_entry_update_rejected(self, posting_engine, session_factory):
        self._post(posting_engine)

        with pytest.raises(PostingImmutabilityError):
            with session_factory.begin() as session:
                entry = session.scalars(select(LedgerEntry)).first()
                entry.amount = 1
                session.flush()

        with session_factory() as session:
            assert {e.amount for e in session.scalars(select(LedgerEntry))} == {700}

    def test_journal_update_rejected(self, posting_engine, session_factory):
        summary = self._post(posting_engine)

        with pytest.raises(PostingImmutabilityError):
            with session_factory.begin() as session:
                session.get(JournalTransaction, summary.id).description = "Edited"

    def test_entry_delete_rejected(self, posting_engine, session_factory):
        self._post(posting_engine)

        with pytest.raises(PostingImmutabilityError):
            with session_factory.begin() as session:
                session.delete(session.scalars(select(LedgerEntry)).first())

        assert count(session_factory, LedgerEntry) == 2


class TestReverseJournal:
    """Tests for reversal postings."""

    def test_reversal_inverts_lines(self, posting_engine, session_factory):
        original = posting_engine.create_journal_entry(
            dt.date(2024, 1, 2), "Deposit", [debit("T-1010", 2500), credit("T-3010", 2500)],
            trade_num="DEP-1",
        )

        reversal = posting_engine.reverse_journal(original.id, dt.date(2024, 1, 5))

        assert reversal.reverses_journal_id == original.id
        assert reversal.trade_num == "DEP-1"
        assert {(l.account_code, l.side.value) for l in reversal.lines} == {
            ("T-1010", "C"),
            ("T-3010", "D"),
        }
        assert balance(session_factory, "T-1010") == 0
        assert balance(session_factory, "T-3010") == 0

    def test_cannot_reverse_twice(self, posting_engine):
        original = posting_engine.create_journal_entry(
            dt.date(2024, 1, 2), "Deposit", [debit("T-1010", 100), credit("T-3010", 100)]
        )
        posting_engine.reverse_journal(original.id)

        with pytest.raises(PostingImmutabilityError):
            posting_engine.reverse_journal(original.id)

    def test_cannot_reverse_a_reversal(self, posting_engine):
        original = posting_engine.create_journal_entry(
            dt.date(2024, 1, 2), "Deposit", [debit("T-1010", 100), credit("T-3010", 100)]
        )
        reversal = posting_engine.reverse_journal(original.id)

        with pytest.raises(PostingImmutabilityError):
            posting_engine.reverse_journal(reversal.id)

    def test_missing_journal(self, posting_engine):
        with pytest.raises(TradeLedgerError, match="not found"):
            posting_engine.reverse_journal(9999)


class TestCommitTrade:
    """Tests for atomic multi-leg commits."""

    def test_short_put_round_trip(self, posting_engine, session_factory):
        """Sell a put for $2.00, buy it back for $0.50 five days later."""
        opened = posting_engine.commit_trade(
            USER, [option_leg(0, "sell", "open", 1, 2.00, fees=0.65)], "cash-secured put", "CSP-1"
        )
        closed = posting_engine.commit_trade(
            USER, [option_leg(5, "buy", "close", 1, 0.50, fees=0.65)], "cash-secured put", "CSP-2"
        )

        assert opened.total == 19935
        assert closed.realized_gain_loss == 15000 - 130
        assert balance(session_factory, "T-2110") == 0
        assert balance(session_factory, "T-4130") == 14870
        assert balance(session_factory, "T-1010") == 14870

        with session_factory() as session:
            lot = session.get(StockLot, opened.lot_ids[0])
            disposition = session.get(LotDisposition, closed.disposition_ids[0])
            assert lot.status == LotStatus.CLOSED
            assert lot.quantity_remaining == 0
            assert disposition.proceeds == 19935
            assert disposition.cost_basis == 5065
            assert disposition.is_long_term is False
            assert disposition.journal_id == closed.journal_id

    def test_spread_posts_one_journal(self, posting_engine, session_factory):
        result = posting_engine.commit_trade(
            USER,
            [
                option_leg(0, "sell", "open", 2, 3.00, strike=150.0),
                option_leg(0, "buy", "open", 2, 1.00, strike=140.0),
            ],
            "bull put spread",
            "BPS-1",
        )

        assert count(session_factory, JournalTransaction) == 1
        assert len(result.lot_ids) == 2
        assert result.total == 80000
        assert balance(session_factory, "T-1010") == 40000
        assert balance(session_factory, "T-2110") == 60000
        assert balance(session_factory, "T-1210") == 20000

        with session_factory() as session:
            positions = list(session.scalars(
                select(TradingPosition).order_by(TradingPosition.leg_index)
            ))
            assert [p.leg_index for p in positions] == [0, 1]
            assert {p.trade_num for p in positions} == {"BPS-1"}
            assert all(p.journal_id == result.journal_id for p in positions)

    def test_failing_leg_rolls_back_everything(self, posting_engine, session_factory):
        """Second leg has nothing to close, so the first leg is not kept either."""
        legs = [
            option_leg(0, "sell", "open", 1, 3.00, strike=150.0),
            option_leg(0, "sell", "close", 1, 1.00, strike=140.0),
        ]

        with pytest.raises(OrphanLegError) as exc_info:
            posting_engine.commit_trade(USER, legs, "bull put spread", "BPS-2")

        assert exc_info.value.leg_index == 1
        assert exc_info.value.leg is legs[1]
        assert count(session_factory, JournalTransaction) == 0
        assert count(session_factory, StockLot) == 0
        assert count(session_factory, TradingPosition) == 0
        assert balance(session_factory, "T-1010") == 0

    def test_close_spans_lots_fifo(self, posting_engine, session_factory):
        posting_engine.commit_trade(USER, [stock_leg(0, "buy", "open", 100, 10.0)], trade_num="B1")
        posting_engine.commit_trade(USER, [stock_leg(1, "buy", "open", 100, 20.0)], trade_num="B2")

        result = posting_engine.commit_trade(
            USER, [stock_leg(10, "sell", "close", 150, 30.0)], trade_num="S1"
        )

        with session_factory() as session:
            dispositions = [session.get(LotDisposition, i) for i in result.disposition_ids]
            assert [d.lot.open_date.day for d in dispositions] == [1, 2]
            assert [d.quantity for d in dispositions] == [100, 50]
            assert [d.realized_gain_loss for d in dispositions] == [200000, 50000]
            assert dispositions[0].lot.status == LotStatus.CLOSED
            assert dispositions[1].lot.status == LotStatus.PARTIALLY_CLOSED
            assert dispositions[1].lot.quantity_remaining == 50

        assert result.realized_gain_loss == 250000
        assert balance(session_factory, "T-4010") == 250000
        assert balance(session_factory, "T-1100") == 100000

    def test_legs_resolve_by_date_then_order(self, posting_engine, session_factory):
        """A close supplied before its open still resolves when dated later."""
        result = posting_engine.commit_trade(
            USER,
            [
                stock_leg(3, "sell", "close", 10, 12.0),
                stock_leg(0, "buy", "open", 10, 10.0),
            ],
            trade_num="DAY-1",
        )

        assert result.realized_gain_loss == 2000
        assert result.date == dt.date(2024, 1, 4)

    def test_same_trade_num_is_idempotent(self, posting_engine, session_factory):
        leg = stock_leg(0, "buy", "open", 10, 10.0)
        first = posting_engine.commit_trade(USER, [leg], trade_num="ONCE")
        second = posting_engine.commit_trade(USER, [leg], trade_num="ONCE")

        assert second.already_committed is True
        assert second.journal_id == first.journal_id
        assert second.lot_ids == first.lot_ids
        assert count(session_factory, JournalTransaction) == 1
        assert count(session_factory, StockLot) == 1

    def test_trade_without_legs_rejected(self, posting_engine):
        with pytest.raises(TradeLedgerError):
            posting_engine.commit_trade(USER, [])

    def test_generated_trade_num(self, posting_engine):
        result = posting_engine.commit_trade(USER, [stock_leg(0, "buy", "open", 1, 5.0)])
        assert result.trade_num.startswith("T-")


class TestCommitTransactions:
    """Tests for committing imported rows."""

    def _rows(self, add_transaction):
        sell = add_transaction(
            name="SELL TO OPEN AAPL 03/15/2024 150.00 PUT", type="sell", price=3.0, quantity=-1,
            fees=0.65, security_type="option", underlying_symbol="AAPL", option_type="put",
            strike_price=150.0, expiration_date=dt.date(2024, 3, 15), position_effect="open",
        )
        buy = add_transaction(
            name="BUY TO OPEN AAPL 03/15/2024 140.00 PUT", type="buy", price=1.0, quantity=1,
            fees=0.65, security_type="option", underlying_symbol="AAPL", option_type="put",
            strike_price=140.0, expiration_date=dt.date(2024, 3, 15), position_effect="open",
        )
        return sell, buy

    def test_rows_annotated_after_commit(self, posting_engine, session_factory, add_transaction):
        from tradeledger.database.models import InvestmentTransaction

        sell, buy = self._rows(add_transaction)
        result = posting_engine.commit_transactions(USER, [sell, buy], "bull put spread", "BPS-9")

        assert result.low_confidence is False
        with session_factory() as session:
            sell_row = session.get(InvestmentTransaction, sell)
            buy_row = session.get(InvestmentTransaction, buy)
            assert (sell_row.trade_num, sell_row.account_code) == ("BPS-9", "T-2110")
            assert (buy_row.trade_num, buy_row.account_code) == ("BPS-9", "T-1210")
            assert sell_row.strategy == "bull put spread"

    def test_recommit_returns_prior_result(self, posting_engine, session_factory, add_transaction):
        sell, buy = self._rows(add_transaction)
        first = posting_engine.commit_transactions(USER, [sell, buy], "bull put spread")
        again = posting_engine.commit_transactions(USER, [sell, buy], "bull put spread")

        assert again.already_committed is True
        assert again.trade_num == first.trade_num
        assert again.journal_id == first.journal_id
        assert count(session_factory, LedgerEntry) == len(first.lines)

    def test_partially_committed_rows_conflict(self, posting_engine, add_transaction):
        sell, buy = self._rows(add_transaction)
        posting_engine.commit_transactions(USER, [sell])

        with pytest.raises(TradeConflictError):
            posting_engine.commit_transactions(USER, [sell, buy])

    def test_other_users_rows_not_found(self, posting_engine, add_transaction):
        sell, _ = self._rows(add_transaction)

        with pytest.raises(TradeLedgerError, match="not found"):
            posting_engine.commit_transactions("someone-else", [sell])
