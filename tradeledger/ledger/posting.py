"""
Ledger posting engine.

Every public operation is one unit of work: lots, dispositions, journal and
account balances are written together or not at all. Posted journals are
append-only; the only correction path is ``reverse_journal``.
"""

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from tradeledger.config.validator import default_settings
from tradeledger.database.models import (
    DispositionKind,
    EntrySide,
    InvestmentTransaction,
    JournalTransaction,
    LedgerEntry,
    LotDisposition,
    StockLot,
)
from tradeledger.errors import (
    PostingImmutabilityError,
    TradeConflictError,
    TradeLedgerError,
)
from tradeledger.ledger.chart_of_accounts import ChartOfAccounts
from tradeledger.ledger.lines import JournalLine, LineBuilder, check_balanced
from tradeledger.positions import tracker as lot_tracker
from tradeledger.positions.legs import TradeLeg, leg_from_transaction
from tradeledger.utils.logging import LogContext, log_posting
from tradeledger.utils.money import cents_to_dollars
from tradeledger.utils.retry import RetryConfig, run_with_retry

logger = logging.getLogger(__name__)


@dataclass
class JournalSummary:
    """A posted journal as returned to callers."""
    id: int
    date: dt.date
    description: str
    total: int
    lines: list[JournalLine]
    posted_at: datetime
    user_id: Optional[str] = None
    strategy: Optional[str] = None
    trade_num: Optional[str] = None
    reverses_journal_id: Optional[int] = None

    @classmethod
    def from_journal(cls, journal: JournalTransaction) -> "JournalSummary":
        return cls(
            id=journal.id,
            date=journal.date,
            description=journal.description,
            total=journal.total_debits,
            lines=[
                JournalLine(entry.account.code, entry.side, entry.amount)
                for entry in journal.entries
            ],
            posted_at=journal.posted_at,
            user_id=journal.user_id,
            strategy=journal.strategy,
            trade_num=journal.trade_num,
            reverses_journal_id=journal.reverses_journal_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "description": self.description,
            "total": cents_to_dollars(self.total),
            "lines": [line.to_dict() for line in self.lines],
            "posted_at": self.posted_at.isoformat(),
            "user_id": self.user_id,
            "strategy": self.strategy,
            "trade_num": self.trade_num,
            "reverses_journal_id": self.reverses_journal_id,
        }


@dataclass
class CommitResult:
    """Outcome of committing a trade or an assignment."""
    trade_num: str
    journal_id: Optional[int]
    date: Optional[dt.date]
    lines: list[JournalLine] = field(default_factory=list)
    lot_ids: list[int] = field(default_factory=list)
    disposition_ids: list[int] = field(default_factory=list)
    realized_gain_loss: int = 0
    strategy: Optional[str] = None
    already_committed: bool = False
    low_confidence: bool = False

    @property
    def total(self) -> int:
        return sum(line.amount for line in self.lines if line.side == EntrySide.DEBIT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_num": self.trade_num,
            "journal_id": self.journal_id,
            "date": self.date.isoformat() if self.date else None,
            "strategy": self.strategy,
            "total": cents_to_dollars(self.total),
            "realized_gain_loss": cents_to_dollars(self.realized_gain_loss),
            "lines": [line.to_dict() for line in self.lines],
            "lot_ids": self.lot_ids,
            "disposition_ids": self.disposition_ids,
            "already_committed": self.already_committed,
            "low_confidence": self.low_confidence,
        }


class LedgerPostingEngine:
    """
    Posts balanced journals and commits trades atomically.

    The engine never creates accounts and exposes no update or delete
    operation on posted journals or their entries.
    """

    def __init__(self, session_factory: sessionmaker, settings: Optional[dict] = None):
        """
        Initialize the posting engine.

        Args:
            session_factory: Factory for per-operation sessions
            settings: Validated settings (defaults when omitted)
        """
        self.session_factory = session_factory
        self.settings = settings or default_settings()
        self.retry_config = RetryConfig.from_settings(self.settings)
        self.option_multiplier = self.settings.get("positions", {}).get("option_multiplier", 100)

    # ------------------------------------------------------------------
    # Journals
    # ------------------------------------------------------------------

    def create_journal_entry(
        self,
        date: dt.date,
        description: str,
        lines: list[JournalLine],
        user_id: Optional[str] = None,
        strategy: Optional[str] = None,
        trade_num: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
    ) -> JournalSummary:
        """
        Post one balanced journal.

        Raises:
            UnbalancedEntryError: If debits differ from credits or a line is invalid
            UnknownAccountError: If any account code is not in the chart
        """
        lines = list(lines)
        check_balanced(lines)

        def post_once() -> JournalSummary:
            with self.session_factory.begin() as session:
                journal = self.post_within(
                    session,
                    date=date,
                    description=description,
                    lines=lines,
                    user_id=user_id,
                    strategy=strategy,
                    trade_num=trade_num,
                    external_transaction_id=external_transaction_id,
                )
                return JournalSummary.from_journal(journal)

        return run_with_retry(post_once, self.retry_config)

    def reverse_journal(
        self,
        journal_id: int,
        date: Optional[dt.date] = None,
        description: Optional[str] = None,
    ) -> JournalSummary:
        """
        Post the mirror image of a journal.

        Raises:
            TradeLedgerError: If the journal does not exist
            PostingImmutabilityError: If it is a reversal or was already reversed
        """
        def reverse_once() -> JournalSummary:
            with self.session_factory.begin() as session:
                original = session.get(
                    JournalTransaction,
                    journal_id,
                    options=[selectinload(JournalTransaction.entries).selectinload(LedgerEntry.account)],
                )
                if original is None:
                    raise TradeLedgerError(f"Journal {journal_id} not found")
                if original.reverses_journal_id is not None:
                    raise PostingImmutabilityError(
                        f"Journal {journal_id} is a reversal of {original.reverses_journal_id} "
                        "and cannot be reversed"
                    )
                existing = session.scalar(
                    select(JournalTransaction.id).where(
                        JournalTransaction.reverses_journal_id == journal_id
                    )
                )
                if existing is not None:
                    raise PostingImmutabilityError(
                        f"Journal {journal_id} was already reversed by journal {existing}"
                    )

                lines = [
                    JournalLine(entry.account.code, entry.side, entry.amount).inverted()
                    for entry in original.entries
                ]
                journal = self.post_within(
                    session,
                    date=date or dt.date.today(),
                    description=description or f"Reversal of journal {journal_id}: {original.description}",
                    lines=lines,
                    user_id=original.user_id,
                    strategy=original.strategy,
                    trade_num=original.trade_num,
                    external_transaction_id=original.external_transaction_id,
                    reverses_journal_id=journal_id,
                )
                return JournalSummary.from_journal(journal)

        return run_with_retry(reverse_once, self.retry_config)

    def post_within(
        self,
        session: Session,
        date: dt.date,
        description: str,
        lines: list[JournalLine],
        user_id: Optional[str] = None,
        strategy: Optional[str] = None,
        trade_num: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
        reverses_journal_id: Optional[int] = None,
    ) -> JournalTransaction:
        """Write a journal and move account balances inside ``session``."""
        total = check_balanced(lines)
        accounts = ChartOfAccounts(session).require(line.account_code for line in lines)

        journal = JournalTransaction(
            user_id=user_id,
            date=date,
            description=description,
            strategy=strategy,
            trade_num=trade_num,
            external_transaction_id=external_transaction_id,
            reverses_journal_id=reverses_journal_id,
            posted_at=datetime.now(timezone.utc),
            entries=[
                LedgerEntry(
                    account=accounts[line.account_code],
                    line_number=number,
                    side=line.side,
                    amount=line.amount,
                )
                for number, line in enumerate(lines, start=1)
            ],
        )
        session.add(journal)

        for line in lines:
            accounts[line.account_code].apply(line.side, line.amount)

        # Version-checked account updates are flushed here
        session.flush()

        log_posting(
            logger,
            str(journal.id),
            description,
            total,
            len(lines),
            trade_num=trade_num,
            reverses_journal_id=reverses_journal_id,
        )
        return journal

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def commit_trade(
        self,
        user_id: str,
        legs: list[TradeLeg],
        strategy: Optional[str] = None,
        trade_num: Optional[str] = None,
    ) -> CommitResult:
        """
        Resolve every leg and post them all as one journal.

        Legs are resolved in order of trade date, then supplied order. If any
        leg fails nothing is written.

        Raises:
            OrphanLegError: If a closing leg has no compatible open lot
            NegativeQuantityError: If a lot would go below zero
            TradeConflictError: If only some source rows are already committed
        """
        if not legs:
            raise TradeLedgerError("A trade needs at least one leg")
        trade_num = trade_num or self._new_trade_num()

        def commit_once() -> CommitResult:
            with LogContext(user_id=user_id, trade_num=trade_num):
                with self.session_factory.begin() as session:
                    source_ids = [leg.transaction_id for leg in legs if leg.transaction_id is not None]
                    prior = self._prior_commit(session, user_id, trade_num, source_ids)
                    if prior is not None:
                        logger.info(f"Trade {trade_num} already committed as journal {prior.journal_id}")
                        return prior

                    tracker = lot_tracker.PositionTracker(session, self.settings)
                    ordered = sorted(enumerate(legs), key=lambda pair: (pair[1].date, pair[0]))
                    effects = []
                    for index, leg in ordered:
                        try:
                            effects.append(tracker.resolve_leg(user_id, leg, strategy, trade_num, index))
                        except TradeLedgerError as e:
                            raise e.with_leg(leg, index)

                    description = f"{strategy or 'Trade'} {trade_num}: " + "; ".join(
                        leg.describe() for _, leg in ordered
                    )
                    trade_date = max(leg.date for leg in legs)
                    return self._finish(session, user_id, trade_num, strategy, trade_date, description, effects)

        return run_with_retry(commit_once, self.retry_config)

    def commit_transactions(
        self,
        user_id: str,
        transaction_ids: list[int],
        strategy: Optional[str] = None,
        trade_num: Optional[str] = None,
    ) -> CommitResult:
        """
        Commit imported rows as one trade.

        Raises:
            TradeLedgerError: If a row is missing or belongs to another user
            LegParseError: If a row cannot be turned into a leg
        """
        with self.session_factory() as session:
            rows = {
                txn.id: txn
                for txn in session.scalars(
                    select(InvestmentTransaction).where(
                        InvestmentTransaction.id.in_(transaction_ids),
                        InvestmentTransaction.user_id == user_id,
                    )
                )
            }

        missing = [tid for tid in transaction_ids if tid not in rows]
        if missing:
            raise TradeLedgerError(f"Transactions not found for user {user_id}: {missing}")

        legs = []
        for index, tid in enumerate(transaction_ids):
            try:
                legs.append(leg_from_transaction(rows[tid], self.option_multiplier))
            except TradeLedgerError as e:
                raise e.with_leg(rows[tid], index)

        return self.commit_trade(user_id, legs, strategy, trade_num)

    def process_assignment(
        self,
        user_id: str,
        transfer_id: int,
        stock_id: int,
        strategy: Optional[str] = None,
        trade_num: Optional[str] = None,
    ) -> CommitResult:
        """
        Post an assignment or exercise as one journal.

        Args:
            user_id: Owner of the rows and lots
            transfer_id: Imported exercise/assignment row for the option
            stock_id: Imported row for the shares moved at the strike

        Raises:
            OrphanLegError: If no matching option lot is open
            LegParseError: If the rows cannot be interpreted
        """
        trade_num = trade_num or f"ASSIGN-{transfer_id}"

        def assign_once() -> CommitResult:
            with LogContext(user_id=user_id, trade_num=trade_num):
                with self.session_factory.begin() as session:
                    prior = self._prior_commit(session, user_id, trade_num, [transfer_id, stock_id])
                    if prior is not None:
                        return prior

                    transfer = self._owned_transaction(session, user_id, transfer_id)
                    stock = self._owned_transaction(session, user_id, stock_id)

                    tracker = lot_tracker.PositionTracker(session, self.settings)
                    effect = tracker.resolve_assignment(user_id, transfer, stock, strategy, trade_num)

                    description = (
                        f"{strategy or 'Assignment/Exercise'} {trade_num}: "
                        f"{transfer.name} / {stock.name}"
                    )
                    trade_date = max(transfer.date, stock.date)
                    return self._finish(session, user_id, trade_num, strategy, trade_date, description, [effect])

        return run_with_retry(assign_once, self.retry_config)

    def _finish(
        self,
        session: Session,
        user_id: str,
        trade_num: str,
        strategy: Optional[str],
        trade_date: dt.date,
        description: str,
        effects: list,
    ) -> CommitResult:
        """Post the combined lines and link every record to the journal."""
        builder = LineBuilder()
        for effect in effects:
            builder.extend(effect.lines)
        lines = builder.build()

        journal = self.post_within(
            session,
            date=trade_date,
            description=description,
            lines=lines,
            user_id=user_id,
            strategy=strategy,
            trade_num=trade_num,
        )

        lot_ids = []
        annotations = {}
        for effect in effects:
            for lot in effect.lots_opened:
                if lot.open_journal_id is None:
                    lot.open_journal_id = journal.id
                if lot.id not in lot_ids:
                    lot_ids.append(lot.id)
            for disposition in effect.dispositions:
                disposition.journal_id = journal.id
            for position in effect.positions:
                position.journal_id = journal.id
            annotations.update(effect.annotations)

        for txn_id, account_code in annotations.items():
            txn = session.get(InvestmentTransaction, txn_id)
            if txn is not None:
                txn.account_code = account_code
                txn.strategy = strategy
                txn.trade_num = trade_num

        session.flush()
        disposition_ids = [d.id for effect in effects for d in effect.dispositions]

        return CommitResult(
            trade_num=trade_num,
            journal_id=journal.id,
            date=trade_date,
            lines=lines,
            lot_ids=lot_ids,
            disposition_ids=disposition_ids,
            realized_gain_loss=sum(effect.realized_gain_loss for effect in effects),
            strategy=strategy,
            low_confidence=any(effect.low_confidence for effect in effects),
        )

    def _prior_commit(
        self,
        session: Session,
        user_id: str,
        trade_num: str,
        source_ids: list[int],
    ) -> Optional[CommitResult]:
        """Result of an earlier commit of the same trade, if there was one.

        Raises:
            TradeConflictError: If only some source rows already carry a trade number
        """
        journal = self._trade_journal(session, user_id, trade_num)
        if journal is not None:
            return self._result_from_journal(session, journal)

        if not source_ids:
            return None

        rows = list(session.scalars(
            select(InvestmentTransaction).where(InvestmentTransaction.id.in_(source_ids))
        ))
        committed = [row for row in rows if row.trade_num]
        if not committed:
            return None
        if len(committed) < len(rows):
            raise TradeConflictError(
                f"Transactions {[row.id for row in committed]} are already committed "
                f"but {[row.id for row in rows if not row.trade_num]} are not"
            )

        prior_nums = {row.trade_num for row in committed}
        if len(prior_nums) > 1:
            raise TradeConflictError(
                f"Transactions belong to different committed trades: {sorted(prior_nums)}"
            )
        prior_num = prior_nums.pop()
        journal = self._trade_journal(session, user_id, prior_num)
        if journal is None:
            return CommitResult(trade_num=prior_num, journal_id=None, date=None, already_committed=True)
        return self._result_from_journal(session, journal)

    @staticmethod
    def _trade_journal(session: Session, user_id: str, trade_num: str) -> Optional[JournalTransaction]:
        return session.scalar(
            select(JournalTransaction)
            .where(
                JournalTransaction.user_id == user_id,
                JournalTransaction.trade_num == trade_num,
                JournalTransaction.reverses_journal_id.is_(None),
            )
            .order_by(JournalTransaction.id)
            .limit(1)
        )

    @staticmethod
    def _result_from_journal(session: Session, journal: JournalTransaction) -> CommitResult:
        dispositions = list(session.scalars(
            select(LotDisposition)
            .where(LotDisposition.journal_id == journal.id)
            .order_by(LotDisposition.id)
        ))
        lot_ids = list(session.scalars(
            select(StockLot.id).where(StockLot.open_journal_id == journal.id).order_by(StockLot.id)
        ))
        return CommitResult(
            trade_num=journal.trade_num,
            journal_id=journal.id,
            date=journal.date,
            lines=[JournalLine(e.account.code, e.side, e.amount) for e in journal.entries],
            lot_ids=lot_ids,
            disposition_ids=[d.id for d in dispositions],
            realized_gain_loss=sum(
                d.realized_gain_loss for d in dispositions if d.kind == DispositionKind.SALE
            ),
            strategy=journal.strategy,
            already_committed=True,
        )

    @staticmethod
    def _owned_transaction(session: Session, user_id: str, txn_id: int) -> InvestmentTransaction:
        txn = session.get(InvestmentTransaction, txn_id)
        if txn is None or txn.user_id != user_id:
            raise TradeLedgerError(f"Transaction {txn_id} not found for user {user_id}")
        return txn

    @staticmethod
    def _new_trade_num() -> str:
        return f"T-{uuid.uuid4().hex[:12]}"
