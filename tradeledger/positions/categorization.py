"""
Background categorization pass.

Suggests an account code and a strategy for imported rows that have not
been committed yet. Users are processed one after another, each in its own
unit of work, so an interrupted run can simply be started again.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from tradeledger.config.validator import default_settings
from tradeledger.database.models import InvestmentTransaction
from tradeledger.errors import LegParseError, TradeLedgerError
from tradeledger.ledger.chart_of_accounts import position_account
from tradeledger.positions.classifier import CUSTOM, classify_strategy
from tradeledger.positions.legs import TradeLeg, leg_from_transaction
from tradeledger.utils.logging import LogContext

logger = logging.getLogger(__name__)

STRUCTURED_CONFIDENCE = 0.9
INFERRED_CONFIDENCE = 0.5
CUSTOM_PENALTY = 0.2


@dataclass
class CategorizationSummary:
    """Counts from one run."""
    users_processed: int = 0
    transactions_categorized: int = 0
    transactions_skipped: int = 0
    failed_users: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "users_processed": self.users_processed,
            "transactions_categorized": self.transactions_categorized,
            "transactions_skipped": self.transactions_skipped,
            "failed_users": self.failed_users,
        }


class CategorizationJob:
    """Fills suggestion fields on uncommitted imported rows."""

    def __init__(self, session_factory: sessionmaker, settings: Optional[dict] = None):
        self.session_factory = session_factory
        self.settings = settings or default_settings()
        self.option_multiplier = self.settings.get("positions", {}).get("option_multiplier", 100)

    def run(self, user_ids: Optional[list[str]] = None) -> CategorizationSummary:
        """
        Categorize pending rows for the given users (all users when omitted).

        A user whose pass fails is logged and skipped; the others still run.
        """
        summary = CategorizationSummary()
        if user_ids is None:
            user_ids = self._pending_users()

        for user_id in user_ids:
            with LogContext(user_id=user_id):
                try:
                    categorized, skipped = self._categorize_user(user_id)
                except (TradeLedgerError, SQLAlchemyError) as e:
                    logger.exception(f"Categorization failed for user {user_id}: {e}")
                    summary.failed_users.append(user_id)
                    continue

            summary.users_processed += 1
            summary.transactions_categorized += categorized
            summary.transactions_skipped += skipped
            logger.info(f"Categorized {categorized} transaction(s) for user {user_id}")

        return summary

    def _pending_users(self) -> list[str]:
        with self.session_factory() as session:
            return list(session.scalars(
                select(InvestmentTransaction.user_id)
                .where(self._pending_filter())
                .distinct()
                .order_by(InvestmentTransaction.user_id)
            ))

    @staticmethod
    def _pending_filter():
        return (
            InvestmentTransaction.trade_num.is_(None)
            & InvestmentTransaction.suggested_account_code.is_(None)
        )

    def _categorize_user(self, user_id: str) -> tuple[int, int]:
        with self.session_factory.begin() as session:
            rows = list(session.scalars(
                select(InvestmentTransaction)
                .where(InvestmentTransaction.user_id == user_id, self._pending_filter())
                .order_by(InvestmentTransaction.date, InvestmentTransaction.id)
            ))

            parsed: list[tuple[InvestmentTransaction, TradeLeg]] = []
            skipped = 0
            for row in rows:
                try:
                    parsed.append((row, leg_from_transaction(row, self.option_multiplier)))
                except LegParseError as e:
                    logger.debug(f"Skipping transaction {row.id}: {e}")
                    skipped += 1

            # Rows on the same day and underlying are treated as one trade
            groups: dict[tuple, list[tuple[InvestmentTransaction, TradeLeg]]] = defaultdict(list)
            for row, leg in parsed:
                groups[(leg.date, leg.symbol)].append((row, leg))

            for members in groups.values():
                strategy = classify_strategy(leg for _, leg in members)
                for row, leg in members:
                    confidence = INFERRED_CONFIDENCE if leg.low_confidence else STRUCTURED_CONFIDENCE
                    if strategy == CUSTOM:
                        confidence -= CUSTOM_PENALTY
                    row.suggested_account_code = position_account(leg.option_type, leg.position_type)
                    row.suggested_strategy = strategy
                    row.suggestion_confidence = round(confidence, 2)

            return len(parsed), skipped
