"""Shared fixtures: a fresh SQLite ledger per test with the chart seeded."""

import datetime as dt

import pytest

from tradeledger.config.validator import default_settings
from tradeledger.database.models import (
    InvestmentTransaction,
    OptionType,
    PositionEffect,
    TradeAction,
    create_session_factory,
    init_db,
)
from tradeledger.ledger.chart_of_accounts import seed_chart_of_accounts
from tradeledger.ledger.posting import LedgerPostingEngine
from tradeledger.positions.legs import TradeLeg

USER = "user-1"


@pytest.fixture
def settings():
    return default_settings()


@pytest.fixture
def engine(tmp_path):
    engine = init_db(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = create_session_factory(engine)
    with factory.begin() as session:
        seed_chart_of_accounts(session)
    return factory


@pytest.fixture
def posting_engine(session_factory, settings):
    return LedgerPostingEngine(session_factory, settings)


def stock_leg(day, action, effect, quantity, price, fees=0.0, symbol="AAPL", **kwargs):
    """Equity leg; ``day`` is a date or a day number in January 2024."""
    if isinstance(day, int):
        day = dt.date(2024, 1, 1) + dt.timedelta(days=day)
    return TradeLeg(
        date=day,
        symbol=symbol,
        action=TradeAction(action),
        position_effect=PositionEffect(effect),
        quantity=quantity,
        price=price,
        fees=fees,
        **kwargs,
    )


def option_leg(
    day,
    action,
    effect,
    quantity,
    price,
    option_type="put",
    strike=150.0,
    expiry=dt.date(2024, 3, 15),
    fees=0.0,
    symbol="AAPL",
    **kwargs,
):
    """Option leg with a 100-share multiplier."""
    return stock_leg(
        day, action, effect, quantity, price, fees=fees, symbol=symbol,
        option_type=OptionType(option_type), strike=strike, expiry=expiry, multiplier=100,
        **kwargs,
    )


@pytest.fixture
def add_transaction(session_factory):
    """Insert an imported row and return its id."""
    def _add(**fields) -> int:
        values = {
            "user_id": USER,
            "date": dt.date(2024, 1, 2),
            "name": "",
            "type": "buy",
            "price": 0.0,
            "quantity": 0.0,
            "fees": 0.0,
        }
        values.update(fields)
        with session_factory.begin() as session:
            txn = InvestmentTransaction(**values)
            session.add(txn)
            session.flush()
            return txn.id
    return _add
