"""Tests for option exercise and assignment."""

import datetime as dt

import pytest
from sqlalchemy import select

from conftest import USER, option_leg, stock_leg
from tradeledger.database.models import (
    Account,
    DispositionKind,
    InvestmentTransaction,
    LotDisposition,
    LotStatus,
    OptionType,
    PositionType,
    StockLot,
)
from tradeledger.errors import LegParseError, OrphanLegError
from tradeledger.ledger.lines import credit, debit

EXPIRY = dt.date(2024, 3, 15)


def balance(session_factory, code):
    with session_factory() as session:
        return session.scalar(select(Account.settled_balance).where(Account.code == code))


def open_option(posting_engine, action, option_type, price, trade_num="OPEN"):
    return posting_engine.commit_trade(
        USER, [option_leg(0, action, "open", 1, price, option_type=option_type)], trade_num=trade_num
    )


def assignment_rows(add_transaction, option_kind, stock_type, name=None, **transfer_fields):
    fields = {
        "type": "transfer",
        "name": name or f"Assigned AAPL {option_kind}",
        "underlying_symbol": "AAPL",
        "option_type": option_kind,
        "strike_price": 150.0,
        "expiration_date": EXPIRY,
        "quantity": 1,
    }
    fields.update(transfer_fields)
    transfer_id = add_transaction(**fields)
    stock_id = add_transaction(
        type=stock_type,
        name=f"{stock_type.title()} 100 AAPL",
        ticker_symbol="AAPL",
        security_type="equity",
        price=150.0,
        quantity=100 if stock_type == "buy" else -100,
    )
    return transfer_id, stock_id


def lot_by_type(session_factory, option_type=None):
    with session_factory() as session:
        stmt = select(StockLot).order_by(StockLot.id)
        for lot in session.scalars(stmt):
            if lot.option_type == option_type:
                return lot
    return None


class TestHolderExercise:
    """The long option holder exercises."""

    def test_call_exercise_adds_premium_to_share_basis(self, posting_engine, session_factory, add_transaction):
        open_option(posting_engine, "buy", "call", 5.00)
        transfer_id, stock_id = assignment_rows(add_transaction, "call", "buy", name="Exercised AAPL call")

        result = posting_engine.process_assignment(USER, transfer_id, stock_id)

        assert result.trade_num == f"ASSIGN-{transfer_id}"
        assert sorted((l.account_code, l.side.value, l.amount) for l in result.lines) == sorted([
            ("T-1200", "C", 50000),
            ("T-1010", "C", 1_500_000),
            ("T-1100", "D", 1_550_000),
        ])
        assert result.realized_gain_loss == 0

        option_lot = lot_by_type(session_factory, option_type=OptionType.CALL)
        assert option_lot.status == LotStatus.CLOSED

        stock_lot = lot_by_type(session_factory, option_type=None)
        assert stock_lot.position_type == PositionType.LONG
        assert stock_lot.quantity_remaining == 100
        assert stock_lot.cost_basis == 1_550_000
        assert stock_lot.open_transaction_id == stock_id

        with session_factory() as session:
            disposition = session.scalars(select(LotDisposition)).one()
            assert disposition.kind == DispositionKind.EXERCISE
            assert disposition.realized_gain_loss == 0
            assert disposition.gain_loss_account_code is None

    def test_put_exercise_without_shares_opens_short_stock(
        self, posting_engine, session_factory, add_transaction
    ):
        open_option(posting_engine, "buy", "put", 4.00)
        transfer_id, stock_id = assignment_rows(add_transaction, "put", "sell")

        posting_engine.process_assignment(USER, transfer_id, stock_id)

        stock_lot = lot_by_type(session_factory, option_type=None)
        assert stock_lot.position_type == PositionType.SHORT
        assert stock_lot.cost_basis == 1_460_000
        assert balance(session_factory, "T-2200") == 1_460_000
        assert balance(session_factory, "T-1210") == 0


class TestWriterAssignment:
    """The short option writer is assigned."""

    def test_short_put_assignment_lowers_share_basis(
        self, posting_engine, session_factory, add_transaction
    ):
        open_option(posting_engine, "sell", "put", 2.00)
        transfer_id, stock_id = assignment_rows(add_transaction, "put", "buy")

        result = posting_engine.process_assignment(USER, transfer_id, stock_id, strategy="cash secured put")

        assert sorted((l.account_code, l.side.value, l.amount) for l in result.lines) == sorted([
            ("T-2110", "D", 20000),
            ("T-1010", "C", 1_500_000),
            ("T-1100", "D", 1_480_000),
        ])
        stock_lot = lot_by_type(session_factory, option_type=None)
        assert stock_lot.cost_basis == 1_480_000
        assert stock_lot.strategy == "cash secured put"

        with session_factory() as session:
            disposition = session.scalars(select(LotDisposition)).one()
            assert disposition.kind == DispositionKind.ASSIGNMENT

    def test_covered_call_assignment_realizes_stock_gain(
        self, posting_engine, session_factory, add_transaction
    ):
        posting_engine.commit_trade(USER, [stock_leg(0, "buy", "open", 100, 140.0)], trade_num="STOCK")
        open_option(posting_engine, "sell", "call", 3.00)
        transfer_id, stock_id = assignment_rows(add_transaction, "call", "sell")

        result = posting_engine.process_assignment(USER, transfer_id, stock_id)

        assert result.realized_gain_loss == 130000
        assert result.lot_ids == []
        assert balance(session_factory, "T-4010") == 130000
        assert balance(session_factory, "T-1100") == 0
        assert balance(session_factory, "T-2100") == 0
        with session_factory() as session:
            lots = list(session.scalars(select(StockLot)))
            assert all(lot.status == LotStatus.CLOSED for lot in lots)
            sale = session.scalars(
                select(LotDisposition).where(LotDisposition.kind == DispositionKind.SALE)
            ).one()
            assert sale.proceeds == 1_530_000
            assert sale.cost_basis == 1_400_000


class TestAssignmentBookkeeping:
    """Idempotency, annotations and failure modes."""

    def test_rows_are_annotated(self, posting_engine, session_factory, add_transaction):
        open_option(posting_engine, "sell", "put", 2.00)
        transfer_id, stock_id = assignment_rows(add_transaction, "put", "buy")

        posting_engine.process_assignment(USER, transfer_id, stock_id)

        with session_factory() as session:
            transfer = session.get(InvestmentTransaction, transfer_id)
            stock = session.get(InvestmentTransaction, stock_id)
            assert transfer.account_code == "T-2110"
            assert stock.account_code == "T-1100"
            assert transfer.trade_num == stock.trade_num == f"ASSIGN-{transfer_id}"

    def test_second_run_is_idempotent(self, posting_engine, session_factory, add_transaction):
        open_option(posting_engine, "sell", "put", 2.00)
        transfer_id, stock_id = assignment_rows(add_transaction, "put", "buy")

        first = posting_engine.process_assignment(USER, transfer_id, stock_id)
        second = posting_engine.process_assignment(USER, transfer_id, stock_id)

        assert second.already_committed is True
        assert second.journal_id == first.journal_id
        assert second.lot_ids == first.lot_ids
        assert balance(session_factory, "T-1100") == 1_480_000

    def test_option_type_read_from_name(self, posting_engine, session_factory, add_transaction):
        open_option(posting_engine, "sell", "put", 2.00)
        transfer_id, stock_id = assignment_rows(
            add_transaction, "put", "buy", name="Assignment AAPL 03/15/2024 150.00 Put", option_type=None
        )

        result = posting_engine.process_assignment(USER, transfer_id, stock_id)

        assert result.low_confidence is True
        assert lot_by_type(session_factory, option_type=None).cost_basis == 1_480_000

    def test_unknown_option_type_rejected(self, posting_engine, add_transaction):
        open_option(posting_engine, "sell", "put", 2.00)
        transfer_id, stock_id = assignment_rows(
            add_transaction, "put", "buy", name="Assignment AAPL", option_type=None
        )

        with pytest.raises(LegParseError):
            posting_engine.process_assignment(USER, transfer_id, stock_id)

    def test_missing_option_lot_is_orphan(self, posting_engine, session_factory, add_transaction):
        transfer_id, stock_id = assignment_rows(add_transaction, "put", "buy")

        with pytest.raises(OrphanLegError):
            posting_engine.process_assignment(USER, transfer_id, stock_id)

        with session_factory() as session:
            assert session.get(InvestmentTransaction, stock_id).trade_num is None

    def test_assignment_reaches_closed_lot_only_once(self, posting_engine, add_transaction):
        open_option(posting_engine, "sell", "put", 2.00)
        first_ids = assignment_rows(add_transaction, "put", "buy")
        second_ids = assignment_rows(add_transaction, "put", "buy")

        posting_engine.process_assignment(USER, *first_ids)

        with pytest.raises(OrphanLegError):
            posting_engine.process_assignment(USER, *second_ids)

    def test_lines_balance(self, posting_engine, add_transaction):
        open_option(posting_engine, "buy", "call", 5.00)
        transfer_id, stock_id = assignment_rows(add_transaction, "call", "buy")

        result = posting_engine.process_assignment(USER, transfer_id, stock_id)

        debits = sum(l.amount for l in result.lines if l.side.value == "D")
        credits = sum(l.amount for l in result.lines if l.side.value == "C")
        assert debits == credits
        assert debit("T-1100", 1_550_000) in result.lines
        assert credit("T-1200", 50000) in result.lines
