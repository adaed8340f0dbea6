"""
Wash-sale detection and cost-basis carry-over.

A loss on a sale is disallowed when substantially identical positions are
opened within the window around the sale date. The disallowed amount is
deferred into the replacement lot's cost basis.
"""

import datetime as dt
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from tradeledger.config.validator import default_settings
from tradeledger.database.models import (
    QUANTITY_EPSILON,
    DispositionKind,
    LotDisposition,
    PositionType,
    StockLot,
    WashSaleAdjustment,
)
from tradeledger.errors import TradeLedgerError, WashSaleAdjustmentError
from tradeledger.ledger.chart_of_accounts import gain_loss_account, position_account
from tradeledger.ledger.lines import LineBuilder
from tradeledger.ledger.posting import LedgerPostingEngine
from tradeledger.utils.logging import LogContext, log_wash_sale
from tradeledger.utils.money import allocate, cents_to_dollars, format_dollars, prorate
from tradeledger.utils.retry import RetryConfig, run_with_retry

logger = logging.getLogger(__name__)


@dataclass
class WashSaleViolation:
    """One disposition/replacement pair and the loss it disallows."""
    disposition_id: int
    symbol: str
    description: str
    sale_date: dt.date
    quantity_sold: float
    realized_loss: int  # cents, positive
    replacement_lot_id: int
    replacement_date: dt.date
    replacement_quantity: float  # units of the replacement lot absorbed
    shares_affected: float  # units of the disposed lot covered
    disallowed_loss: int  # cents
    adjusted_cost_basis: int  # replacement lot basis after adjustment, cents
    replacement_type: str  # e.g. "stock_to_stock", "option_to_stock"

    def to_dict(self) -> dict[str, Any]:
        return {
            "disposition_id": self.disposition_id,
            "symbol": self.symbol,
            "description": self.description,
            "sale_date": self.sale_date.isoformat(),
            "quantity_sold": self.quantity_sold,
            "realized_loss": cents_to_dollars(self.realized_loss),
            "replacement_lot_id": self.replacement_lot_id,
            "replacement_date": self.replacement_date.isoformat(),
            "replacement_quantity": self.replacement_quantity,
            "shares_affected": self.shares_affected,
            "disallowed_loss": cents_to_dollars(self.disallowed_loss),
            "adjusted_cost_basis": cents_to_dollars(self.adjusted_cost_basis),
            "replacement_type": self.replacement_type,
        }


@dataclass
class WashSaleReport:
    """Result of a detection run."""
    violations: list[WashSaleViolation] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for violation in self.violations:
            by_type[violation.replacement_type] = by_type.get(violation.replacement_type, 0) + 1
        return {
            "total_violations": len(self.violations),
            "total_disallowed_losses": cents_to_dollars(
                sum(v.disallowed_loss for v in self.violations)
            ),
            "symbols_affected": sorted({v.symbol for v in self.violations}),
            "by_replacement_type": by_type,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "violations": [v.to_dict() for v in self.violations],
            "summary": self.summary,
        }


@dataclass
class WashSaleApplyResult:
    """Outcome of applying a batch of violations."""
    updated: int = 0
    skipped: list[dict[str, Any]] = field(default_factory=list)
    journal_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated": self.updated,
            "skipped": self.skipped,
            "journal_ids": self.journal_ids,
        }


class WashSaleDetector:
    """
    Finds and applies wash sales for one user at a time.

    Detection is read-only. Each applied violation is its own unit of work,
    so one bad pair never blocks the rest of the batch.
    """

    def __init__(self, session_factory: sessionmaker, settings: Optional[dict] = None):
        self.session_factory = session_factory
        self.settings = settings or default_settings()
        section = self.settings.get("wash_sale", {})
        self.window_days = section.get("window_days", 30)
        self.match_options_on_underlying = section.get("match_options_on_underlying", False)
        self.retry_config = RetryConfig.from_settings(self.settings)
        self.engine = LedgerPostingEngine(session_factory, self.settings)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_wash_sales(self, user_id: str) -> WashSaleReport:
        """
        Scan a user's losing sales for replacement purchases.

        Dispositions are examined while some of their loss is still allowed.
        A replacement lot already paired with a disposition is never reported
        for it again, so a run after applying reports only new pairs.
        """
        report = WashSaleReport()
        with self.session_factory() as session:
            dispositions = list(session.scalars(
                select(LotDisposition)
                .join(LotDisposition.lot)
                .where(
                    LotDisposition.user_id == user_id,
                    LotDisposition.kind == DispositionKind.SALE,
                    LotDisposition.realized_gain_loss + LotDisposition.disallowed_amount < 0,
                    StockLot.position_type == PositionType.LONG,
                )
                .options(
                    selectinload(LotDisposition.lot),
                    selectinload(LotDisposition.wash_sale_adjustments),
                )
                .order_by(LotDisposition.close_date, LotDisposition.id)
            ))
            if not dispositions:
                return report

            # Closed lots still count; a sold replacement does not undo the wash
            candidates = list(session.scalars(
                select(StockLot)
                .where(
                    StockLot.user_id == user_id,
                    StockLot.position_type == PositionType.LONG,
                )
                .order_by(StockLot.open_date, StockLot.id)
            ))

            # Replacement units and basis already promised within this run
            planned_use: dict[int, float] = {}
            planned_basis: dict[int, int] = {}

            for disposition in dispositions:
                report.violations.extend(
                    self._violations_for(session, disposition, candidates, planned_use, planned_basis)
                )

        for violation in report.violations:
            log_wash_sale(
                logger,
                violation.symbol,
                violation.disposition_id,
                violation.replacement_lot_id,
                violation.disallowed_loss,
                user_id=user_id,
                stage="detected",
            )
        return report

    def _violations_for(
        self,
        session: Session,
        disposition: LotDisposition,
        candidates: list[StockLot],
        planned_use: dict[int, float],
        planned_basis: dict[int, int],
    ) -> list[WashSaleViolation]:
        sold = disposition.lot
        window_start = disposition.close_date - timedelta(days=self.window_days)
        window_end = disposition.close_date + timedelta(days=self.window_days)
        same_close = self._lots_closed_together(session, disposition)
        paired = {adjustment.replacement_lot_id for adjustment in disposition.wash_sale_adjustments}

        splits: list[tuple[StockLot, float, float]] = []
        remaining = disposition.uncovered_quantity
        for lot in candidates:
            if remaining <= QUANTITY_EPSILON:
                break
            if lot.id == sold.id or lot.id in same_close or lot.id in paired:
                continue
            if not window_start <= lot.open_date <= window_end:
                continue
            # Fully sold before the loss sale, so never held as a replacement
            if lot.closed_date is not None and lot.closed_date <= disposition.close_date:
                continue
            ratio = self._coverage_ratio(sold, lot)
            if ratio is None:
                continue

            available = (
                lot.original_quantity - lot.replacement_quantity_used - planned_use.get(lot.id, 0.0)
            )
            if available <= QUANTITY_EPSILON:
                continue

            covered = min(remaining, available * ratio)
            splits.append((lot, covered, covered / ratio))
            remaining -= covered

        if not splits:
            return []

        loss = -disposition.realized_gain_loss
        covered_total = sum(covered for _, covered, _ in splits)
        disallowed = min(prorate(loss, covered_total, disposition.quantity), disposition.remaining_loss)
        amounts = allocate(disallowed, [covered for _, covered, _ in splits])

        violations = []
        for (lot, covered, used), amount in zip(splits, amounts):
            planned_use[lot.id] = planned_use.get(lot.id, 0.0) + used
            planned_basis[lot.id] = planned_basis.get(lot.id, lot.cost_basis) + amount
            violations.append(WashSaleViolation(
                disposition_id=disposition.id,
                symbol=sold.symbol,
                description=sold.describe(disposition.quantity),
                sale_date=disposition.close_date,
                quantity_sold=disposition.quantity,
                realized_loss=loss,
                replacement_lot_id=lot.id,
                replacement_date=lot.open_date,
                replacement_quantity=used,
                shares_affected=covered,
                disallowed_loss=amount,
                adjusted_cost_basis=planned_basis[lot.id],
                replacement_type=self._replacement_type(sold, lot),
            ))
        return violations

    def _coverage_ratio(self, sold: StockLot, replacement: StockLot) -> Optional[float]:
        """Units of the sold lot covered by one unit of the replacement, or None."""
        if replacement.instrument_key == sold.instrument_key:
            return 1.0
        if not self.match_options_on_underlying or replacement.symbol != sold.symbol:
            return None
        # Any stock or option position on the same underlying, in share terms
        return float(replacement.multiplier or 1) / float(sold.multiplier or 1)

    @staticmethod
    def _replacement_type(sold: StockLot, replacement: StockLot) -> str:
        source = "option" if sold.is_option else "stock"
        target = "option" if replacement.is_option else "stock"
        return f"{source}_to_{target}"

    @staticmethod
    def _lots_closed_together(session: Session, disposition: LotDisposition) -> set[int]:
        if disposition.close_ref is None:
            return set()
        return set(session.scalars(
            select(LotDisposition.lot_id).where(
                LotDisposition.user_id == disposition.user_id,
                LotDisposition.close_ref == disposition.close_ref,
            )
        ))

    # ------------------------------------------------------------------
    # Adjustment
    # ------------------------------------------------------------------

    def apply_wash_sale_adjustments(
        self,
        user_id: str,
        violations: list[WashSaleViolation],
    ) -> WashSaleApplyResult:
        """
        Defer each violation's disallowed loss into its replacement lot.

        Each disposition/replacement pair is adjusted once; a pair already
        adjusted is skipped. Splits of one disposition across several lots
        apply independently. Units of the replacement lot that were sold
        before the adjustment take their share of the deferred loss into the
        gain or loss of those sales.
        """
        result = WashSaleApplyResult()

        with LogContext(user_id=user_id):
            for violation in violations:
                try:
                    journal_id = run_with_retry(self._apply_one, self.retry_config, user_id, violation)
                except (TradeLedgerError, SQLAlchemyError) as e:
                    logger.warning(
                        f"Skipped wash sale for disposition {violation.disposition_id} "
                        f"-> lot {violation.replacement_lot_id}: {e}"
                    )
                    result.skipped.append({
                        "disposition_id": violation.disposition_id,
                        "replacement_lot_id": violation.replacement_lot_id,
                        "reason": str(e),
                    })
                    continue

                result.updated += 1
                result.journal_ids.append(journal_id)
                log_wash_sale(
                    logger,
                    violation.symbol,
                    violation.disposition_id,
                    violation.replacement_lot_id,
                    violation.disallowed_loss,
                    stage="applied",
                    journal_id=journal_id,
                )

        logger.info(
            f"Applied {result.updated} wash sale adjustment(s) for user {user_id}, "
            f"skipped {len(result.skipped)}"
        )
        return result

    def _apply_one(self, user_id: str, violation: WashSaleViolation) -> int:
        with self.session_factory.begin() as session:
            disposition = session.get(LotDisposition, violation.disposition_id)
            if disposition is None or disposition.user_id != user_id:
                raise WashSaleAdjustmentError(f"Disposition {violation.disposition_id} not found")
            if disposition.kind != DispositionKind.SALE or disposition.realized_gain_loss >= 0:
                raise WashSaleAdjustmentError(f"Disposition {disposition.id} is not a losing sale")

            existing = session.scalar(
                select(WashSaleAdjustment.id).where(
                    WashSaleAdjustment.disposition_id == disposition.id,
                    WashSaleAdjustment.replacement_lot_id == violation.replacement_lot_id,
                )
            )
            if existing is not None:
                raise WashSaleAdjustmentError(
                    f"Disposition {disposition.id} was already adjusted for a wash sale "
                    f"with lot {violation.replacement_lot_id}"
                )

            remaining_loss = disposition.remaining_loss
            if violation.disallowed_loss <= 0 or violation.disallowed_loss > remaining_loss:
                raise WashSaleAdjustmentError(
                    f"Disallowed amount {violation.disallowed_loss} exceeds the "
                    f"{remaining_loss} cents of loss left on disposition {disposition.id}"
                )

            lot = session.get(StockLot, violation.replacement_lot_id)
            if lot is None or lot.user_id != user_id or lot.position_type != PositionType.LONG:
                raise WashSaleAdjustmentError(
                    f"Replacement lot {violation.replacement_lot_id} not found"
                )
            if lot.id == disposition.lot_id:
                raise WashSaleAdjustmentError(f"Lot {lot.id} cannot replace its own sale")
            unused = lot.original_quantity - lot.replacement_quantity_used
            if violation.replacement_quantity - unused > QUANTITY_EPSILON:
                raise WashSaleAdjustmentError(
                    f"Replacement lot {lot.id} has only {unused:g} unused units, "
                    f"{violation.replacement_quantity:g} requested"
                )
            uncovered = disposition.uncovered_quantity
            if violation.shares_affected - uncovered > QUANTITY_EPSILON:
                raise WashSaleAdjustmentError(
                    f"Disposition {disposition.id} has only {uncovered:g} units left to match, "
                    f"{violation.shares_affected:g} requested"
                )

            disposition.loss_disallowed = True
            disposition.disallowed_amount += violation.disallowed_loss
            if disposition.wash_sale_replacement_lot_id is None:
                disposition.wash_sale_replacement_lot_id = lot.id

            lot.cost_basis += violation.disallowed_loss
            lot.wash_sale_adjustment += violation.disallowed_loss
            lot.replacement_quantity_used += violation.replacement_quantity

            builder = LineBuilder()
            held_share, carried = self._carry_into_sales(lot, violation.disallowed_loss, builder)
            builder.debit(position_account(lot.option_type, PositionType.LONG), held_share)
            # Reverse the recognized loss
            builder.credit(disposition.gain_loss_account_code, violation.disallowed_loss)

            journal = self.engine.post_within(
                session,
                date=disposition.close_date,
                description=(
                    f"Wash sale: {violation.description} loss of "
                    f"${format_dollars(violation.disallowed_loss)} deferred to lot {lot.id}"
                ),
                lines=builder.build(),
                user_id=user_id,
                strategy=disposition.strategy,
                trade_num=disposition.trade_num,
            )

            session.add(
                WashSaleAdjustment(
                    user_id=user_id,
                    disposition=disposition,
                    replacement_lot_id=lot.id,
                    replacement_quantity=violation.replacement_quantity,
                    shares_affected=violation.shares_affected,
                    disallowed_amount=violation.disallowed_loss,
                    carried_amount=carried,
                    journal_id=journal.id,
                )
            )
            return journal.id

    @staticmethod
    def _carry_into_sales(lot: StockLot, amount: int, builder: LineBuilder) -> tuple[int, int]:
        """
        Spread ``amount`` over the lot's held and already sold units.

        Each sold unit's share raises that sale's basis and is rebooked from
        its old gain or loss account to the one matching the new result.

        Returns:
            (cents left in the held position, cents carried into sales)
        """
        sales = lot.dispositions
        if any(d.kind != DispositionKind.SALE for d in sales):
            raise WashSaleAdjustmentError(
                f"Replacement lot {lot.id} was closed by exercise, assignment or expiration"
            )

        held = lot.quantity_remaining if lot.quantity_remaining > QUANTITY_EPSILON else 0.0
        shares = allocate(amount, [held] + [d.quantity for d in sales])
        carried = 0
        for d, share in zip(sales, shares[1:]):
            if not share:
                continue
            old_account, old_result = d.gain_loss_account_code, d.realized_gain_loss
            d.cost_basis += share
            d.realized_gain_loss -= share
            d.gain_loss_account_code = gain_loss_account(
                lot.is_option, d.realized_gain_loss >= 0, d.is_long_term, d.strategy
            )
            lot.basis_released += share
            builder.credit(old_account, -old_result)
            builder.credit(d.gain_loss_account_code, d.realized_gain_loss)
            carried += share
        return shares[0], carried
