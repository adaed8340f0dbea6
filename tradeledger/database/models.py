"""SQLAlchemy database models for the trading ledger."""

import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    inspect,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from tradeledger.errors import NegativeQuantityError, PostingImmutabilityError

# Quantities are floats; anything below this is treated as zero
QUANTITY_EPSILON = 1e-9


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class EntrySide(str, Enum):
    """Debit or credit side of a ledger line."""
    DEBIT = "D"
    CREDIT = "C"

    @property
    def opposite(self) -> "EntrySide":
        return EntrySide.CREDIT if self is EntrySide.DEBIT else EntrySide.DEBIT


class AccountType(str, Enum):
    """Account classification in the chart of accounts."""
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"


class PositionType(str, Enum):
    """Direction of a lot."""
    LONG = "long"
    SHORT = "short"


class LotStatus(str, Enum):
    """Lot lifecycle status."""
    OPEN = "OPEN"
    PARTIALLY_CLOSED = "PARTIALLY_CLOSED"
    CLOSED = "CLOSED"


class OptionType(str, Enum):
    """Option contract type."""
    CALL = "call"
    PUT = "put"


class DispositionKind(str, Enum):
    """What closed a lot portion."""
    SALE = "sale"
    EXERCISE = "exercise"  # holder converted the option into stock
    ASSIGNMENT = "assignment"  # writer was assigned


class TradeAction(str, Enum):
    """Buy or sell side of an imported row or leg."""
    BUY = "buy"
    SELL = "sell"


class PositionEffect(str, Enum):
    """Whether a leg opens or closes a position."""
    OPEN = "open"
    CLOSE = "close"


class Account(Base):
    """Chart-of-accounts entry with its running balance.

    The balance is only ever moved by the posting engine; ``version`` is the
    optimistic concurrency token checked on every update.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(SQLEnum(AccountType), nullable=False)
    normal_side: Mapped[EntrySide] = mapped_column(SQLEnum(EntrySide), nullable=False)
    settled_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    def apply(self, side: EntrySide, amount: int) -> None:
        """Move the running balance for one posted line."""
        if side == self.normal_side:
            self.settled_balance += amount
        else:
            self.settled_balance -= amount

    def __repr__(self) -> str:
        return (
            f"<Account(code={self.code}, type={self.account_type.value}, "
            f"balance={self.settled_balance})>"
        )


class JournalTransaction(Base):
    """A posted journal. Never modified once written."""

    __tablename__ = "journal_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    strategy: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    trade_num: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reverses_journal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("journal_transactions.id"), nullable=True, index=True
    )
    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    entries: Mapped[list["LedgerEntry"]] = relationship(
        back_populates="journal", order_by="LedgerEntry.line_number"
    )

    @property
    def total_debits(self) -> int:
        return sum(e.amount for e in self.entries if e.side == EntrySide.DEBIT)

    @property
    def total_credits(self) -> int:
        return sum(e.amount for e in self.entries if e.side == EntrySide.CREDIT)

    def __repr__(self) -> str:
        return (
            f"<JournalTransaction(id={self.id}, date={self.date}, "
            f"trade_num={self.trade_num}, lines={len(self.entries)})>"
        )


class LedgerEntry(Base):
    """One debit or credit line of a journal. Append-only."""

    __tablename__ = "ledger_entries"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_ledger_entry_amount_positive"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    journal_id: Mapped[int] = mapped_column(
        ForeignKey("journal_transactions.id"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    side: Mapped[EntrySide] = mapped_column(SQLEnum(EntrySide), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    journal: Mapped[JournalTransaction] = relationship(back_populates="entries")
    account: Mapped[Account] = relationship()

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(journal={self.journal_id}, account={self.account_id}, "
            f"{self.side.value} {self.amount})>"
        )


def _reject_posted_update(mapper, connection, target) -> None:
    state = inspect(target)
    for attr in mapper.column_attrs:
        if state.attrs[attr.key].history.has_changes():
            raise PostingImmutabilityError(
                f"{type(target).__name__} {target.id} is posted and cannot be modified; "
                "post a reversal instead"
            )


def _reject_posted_delete(mapper, connection, target) -> None:
    raise PostingImmutabilityError(
        f"{type(target).__name__} {target.id} is posted and cannot be deleted; "
        "post a reversal instead"
    )


for _model in (JournalTransaction, LedgerEntry):
    event.listen(_model, "before_update", _reject_posted_update)
    event.listen(_model, "before_delete", _reject_posted_delete)


class StockLot(Base):
    """A cost-basis lot of shares or option contracts."""

    __tablename__ = "stock_lots"
    __table_args__ = (
        CheckConstraint("quantity_remaining >= 0", name="ck_stock_lot_remaining_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Option descriptor, null for equities
    option_type: Mapped[Optional[OptionType]] = mapped_column(SQLEnum(OptionType), nullable=True)
    strike: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    expiry: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)
    multiplier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    position_type: Mapped[PositionType] = mapped_column(SQLEnum(PositionType), nullable=False)
    open_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    original_quantity: Mapped[float] = mapped_column(Float, nullable=False)
    quantity_remaining: Mapped[float] = mapped_column(Float, nullable=False)
    open_price: Mapped[float] = mapped_column(Float, nullable=False)

    # Cents. Long: price paid plus fees. Short: net premium received.
    cost_basis: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fees: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    basis_released: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    wash_sale_adjustment: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    replacement_quantity_used: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    status: Mapped[LotStatus] = mapped_column(SQLEnum(LotStatus), nullable=False, default=LotStatus.OPEN)
    closed_date: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)

    strategy: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    trade_num: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    open_transaction_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    open_journal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("journal_transactions.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    dispositions: Mapped[list["LotDisposition"]] = relationship(
        back_populates="lot",
        foreign_keys="LotDisposition.lot_id",
        order_by="LotDisposition.id",
    )

    @property
    def is_option(self) -> bool:
        return self.option_type is not None

    @property
    def instrument_key(self) -> tuple:
        """Identity used to match closes and wash-sale replacements."""
        return (self.symbol, self.option_type, self.strike, self.expiry)

    @property
    def remaining_basis(self) -> int:
        return self.cost_basis - self.basis_released

    @property
    def share_equivalent(self) -> float:
        """Original quantity measured in underlying shares."""
        return self.original_quantity * (self.multiplier or 1)

    @property
    def is_untouched(self) -> bool:
        return (
            self.status == LotStatus.OPEN
            and abs(self.quantity_remaining - self.original_quantity) < QUANTITY_EPSILON
            and not self.wash_sale_adjustment
            and not self.replacement_quantity_used
        )

    def consume(self, quantity: float, close_date: Optional[dt.date] = None) -> None:
        """Reduce the remaining quantity, updating status.

        Raises:
            NegativeQuantityError: If ``quantity`` exceeds what remains
        """
        if quantity <= 0 or quantity - self.quantity_remaining > QUANTITY_EPSILON:
            raise NegativeQuantityError(self.id, self.quantity_remaining, quantity)

        remaining = self.quantity_remaining - quantity
        if remaining < QUANTITY_EPSILON:
            self.quantity_remaining = 0.0
            self.status = LotStatus.CLOSED
            self.closed_date = close_date
        else:
            self.quantity_remaining = remaining
            self.status = LotStatus.PARTIALLY_CLOSED

    def describe(self, quantity: Optional[float] = None) -> str:
        """Human description, e.g. ``100 sh AAPL`` or ``1 AAPL Jan 17 2025 $150 Put``."""
        qty = self.original_quantity if quantity is None else quantity
        qty_text = f"{qty:g}"
        if not self.is_option:
            return f"{qty_text} sh {self.symbol}"
        expiry = self.expiry.strftime("%b %d %Y") if self.expiry else "?"
        strike = f"{self.strike:g}" if self.strike is not None else "?"
        return f"{qty_text} {self.symbol} {expiry} ${strike} {self.option_type.value.title()}"

    def __repr__(self) -> str:
        return (
            f"<StockLot(id={self.id}, {self.position_type.value} {self.describe()}, "
            f"remaining={self.quantity_remaining}, basis={self.cost_basis}, "
            f"status={self.status.value})>"
        )


class LotDisposition(Base):
    """Closing of (part of) one lot, with its realized gain or loss."""

    __tablename__ = "lot_dispositions"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_lot_disposition_quantity_positive"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("stock_lots.id"), nullable=False, index=True)
    kind: Mapped[DispositionKind] = mapped_column(
        SQLEnum(DispositionKind), nullable=False, default=DispositionKind.SALE
    )
    close_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)

    # Cents
    proceeds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cost_basis: Mapped[int] = mapped_column(BigInteger, nullable=False)
    realized_gain_loss: Mapped[int] = mapped_column(BigInteger, nullable=False)

    is_long_term: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    holding_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gain_loss_account_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Identifies the closing leg; lots closed by the same leg are not replacements for each other
    close_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    # Set by wash-sale processing
    loss_disallowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    disallowed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    wash_sale_replacement_lot_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stock_lots.id"), nullable=True
    )

    strategy: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    trade_num: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    journal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("journal_transactions.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    lot: Mapped[StockLot] = relationship(back_populates="dispositions", foreign_keys=[lot_id])
    replacement_lot: Mapped[Optional[StockLot]] = relationship(
        foreign_keys=[wash_sale_replacement_lot_id]
    )
    wash_sale_adjustments: Mapped[list["WashSaleAdjustment"]] = relationship(
        back_populates="disposition",
        order_by="WashSaleAdjustment.id",
    )

    @property
    def remaining_loss(self) -> int:
        """Loss in cents not yet disallowed; zero for gains."""
        return max(-self.realized_gain_loss - self.disallowed_amount, 0)

    @property
    def uncovered_quantity(self) -> float:
        """Units of the disposition not yet matched to a replacement."""
        return self.quantity - sum(a.shares_affected for a in self.wash_sale_adjustments)

    @property
    def is_loss(self) -> bool:
        return self.realized_gain_loss < 0

    def __repr__(self) -> str:
        return (
            f"<LotDisposition(id={self.id}, lot={self.lot_id}, qty={self.quantity}, "
            f"gain_loss={self.realized_gain_loss}, washed={self.loss_disallowed})>"
        )


class WashSaleAdjustment(Base):
    """One applied wash sale: a losing disposition paired with a replacement lot.

    A pair is adjusted at most once. ``carried_amount`` is the part of the
    disallowed loss that went into dispositions of the replacement lot because
    those units were already sold when the adjustment was applied.
    """

    __tablename__ = "wash_sale_adjustments"
    __table_args__ = (
        UniqueConstraint("disposition_id", "replacement_lot_id", name="uq_wash_sale_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    disposition_id: Mapped[int] = mapped_column(ForeignKey("lot_dispositions.id"), nullable=False, index=True)
    replacement_lot_id: Mapped[int] = mapped_column(ForeignKey("stock_lots.id"), nullable=False, index=True)

    replacement_quantity: Mapped[float] = mapped_column(Float, nullable=False)
    shares_affected: Mapped[float] = mapped_column(Float, nullable=False)
    disallowed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    carried_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    journal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("journal_transactions.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    disposition: Mapped[LotDisposition] = relationship(back_populates="wash_sale_adjustments")
    replacement_lot: Mapped[StockLot] = relationship()

    def __repr__(self) -> str:
        return (
            f"<WashSaleAdjustment(disposition={self.disposition_id}, lot={self.replacement_lot_id}, "
            f"disallowed={self.disallowed_amount}, carried={self.carried_amount})>"
        )


class TradingPosition(Base):
    """Per-leg record of a committed trade, grouped by ``trade_num``."""

    __tablename__ = "trading_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trade_num: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    leg_index: Mapped[int] = mapped_column(Integer, nullable=False)
    trade_date: Mapped[dt.date] = mapped_column(Date, nullable=False)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    option_type: Mapped[Optional[OptionType]] = mapped_column(SQLEnum(OptionType), nullable=True)
    strike: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    expiry: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)

    action: Mapped[TradeAction] = mapped_column(SQLEnum(TradeAction), nullable=False)
    position_effect: Mapped[PositionEffect] = mapped_column(SQLEnum(PositionEffect), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    open_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    close_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fees: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    realized_gain_loss: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    strategy: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    account_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    lot_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stock_lots.id"), nullable=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    journal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("journal_transactions.id"), nullable=True
    )
    low_confidence: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<TradingPosition(trade={self.trade_num}#{self.leg_index}, {self.symbol}, "
            f"{self.action.value} to {self.position_effect.value}, qty={self.quantity})>"
        )


class InvestmentTransaction(Base):
    """Imported brokerage row. Read by the tracker, annotated after commit."""

    __tablename__ = "investment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # buy, sell, transfer, ...
    subtype: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fees: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Security descriptor
    security_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # equity, option
    ticker_symbol: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    underlying_symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    option_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    strike_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    expiration_date: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)

    # Structured trade intent, when the feed supplies it
    action: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    position_effect: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Set on commit
    account_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    strategy: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    trade_num: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)

    # Set by the categorization job
    suggested_account_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    suggested_strategy: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    suggestion_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @property
    def is_committed(self) -> bool:
        return bool(self.trade_num)

    def __repr__(self) -> str:
        return (
            f"<InvestmentTransaction(id={self.id}, date={self.date}, type={self.type}, "
            f"name={self.name!r}, qty={self.quantity}, price={self.price})>"
        )


def init_db(database_url: str = "sqlite:///data/tradeledger.db", echo: bool = False):
    """Create the engine and all tables. Returns the engine."""
    engine = create_engine(database_url, echo=echo)
    Base.metadata.create_all(engine)
    return engine


def create_session_factory(engine) -> sessionmaker:
    """Session factory used by every service for its units of work."""
    return sessionmaker(bind=engine, expire_on_commit=False)
