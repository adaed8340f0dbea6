"""Database models and utilities."""

from .models import (
    QUANTITY_EPSILON,
    Base,
    Account,
    AccountType,
    DispositionKind,
    EntrySide,
    InvestmentTransaction,
    JournalTransaction,
    LedgerEntry,
    LotDisposition,
    LotStatus,
    OptionType,
    PositionEffect,
    PositionType,
    StockLot,
    TradeAction,
    TradingPosition,
    WashSaleAdjustment,
    init_db,
    create_session_factory,
)

__all__ = [
    "QUANTITY_EPSILON",
    "Base",
    "Account",
    "AccountType",
    "DispositionKind",
    "EntrySide",
    "InvestmentTransaction",
    "JournalTransaction",
    "LedgerEntry",
    "LotDisposition",
    "LotStatus",
    "OptionType",
    "PositionEffect",
    "PositionType",
    "StockLot",
    "TradeAction",
    "TradingPosition",
    "WashSaleAdjustment",
    "init_db",
    "create_session_factory",
]
