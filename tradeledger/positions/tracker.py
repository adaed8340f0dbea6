"""
Position and lot tracking.

Opens and closes cost-basis lots for stock and option legs, converts option
lots into stock on assignment or exercise, and computes the journal lines
each leg implies. The tracker writes lots, dispositions and per-leg records
into the session it is given; posting the lines and committing is up to the
caller, so a failing leg leaves nothing behind.
"""

import datetime as dt
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from tradeledger.config.validator import default_settings
from tradeledger.database.models import (
    QUANTITY_EPSILON,
    DispositionKind,
    InvestmentTransaction,
    LotDisposition,
    LotStatus,
    OptionType,
    PositionEffect,
    PositionType,
    StockLot,
    TradeAction,
    TradingPosition,
)
from tradeledger.errors import LegParseError, OrphanLegError
from tradeledger.ledger.chart_of_accounts import (
    CASH,
    LONG_STOCK,
    SHORT_STOCK,
    gain_loss_account,
    position_account,
)
from tradeledger.ledger.lines import JournalLine, LineBuilder
from tradeledger.positions.legs import (
    DEFAULT_OPTION_MULTIPLIER,
    TradeLeg,
    parse_action,
    parse_expiry,
    parse_option_type,
    parse_strike,
    parse_ticker,
)
from tradeledger.utils.logging import log_disposition
from tradeledger.utils.money import allocate, gross_cents, prorate, to_cents

logger = logging.getLogger(__name__)

_STRIKE_TOLERANCE = 1e-6


class CostBasisMethod(str, Enum):
    """Method for selecting which lots a close consumes."""
    FIFO = "fifo"  # First In, First Out
    LIFO = "lifo"  # Last In, First Out
    HIFO = "hifo"  # Highest In, First Out (minimize gains)


def one_year_after(open_date: dt.date) -> dt.date:
    """Anniversary of ``open_date``; Feb 29 maps to Feb 28."""
    try:
        return open_date.replace(year=open_date.year + 1)
    except ValueError:
        return open_date.replace(year=open_date.year + 1, day=28)


def is_long_term(open_date: dt.date, close_date: dt.date) -> bool:
    """Held more than one year: sold after the anniversary of the open date."""
    return close_date > one_year_after(open_date)


@dataclass
class LegEffect:
    """What resolving one leg (or one assignment) did and must post."""
    lines: list[JournalLine] = field(default_factory=list)
    lots_opened: list[StockLot] = field(default_factory=list)
    dispositions: list[LotDisposition] = field(default_factory=list)
    positions: list[TradingPosition] = field(default_factory=list)
    annotations: dict[int, str] = field(default_factory=dict)  # transaction id -> account code
    account_code: Optional[str] = None
    low_confidence: bool = False

    @property
    def realized_gain_loss(self) -> int:
        return sum(d.realized_gain_loss for d in self.dispositions)


def _same_strike(lot_strike: Optional[float], wanted: Optional[float]) -> bool:
    if wanted is None:
        return True
    return lot_strike is not None and abs(lot_strike - wanted) < _STRIKE_TOLERANCE


class PositionTracker:
    """
    Lot tracker bound to one unit of work.

    Features:
    - FIFO (default), LIFO or HIFO lot matching
    - Same-day consolidation of untouched lots
    - Long and short positions in stock and options
    - Assignment / exercise conversion into stock lots
    """

    def __init__(self, session: Session, settings: Optional[dict] = None):
        """
        Initialize the tracker.

        Args:
            session: Session of the current unit of work
            settings: Validated settings (defaults when omitted)
        """
        settings = settings or default_settings()
        section = settings.get("positions", {})
        self.session = session
        self.cost_basis_method = CostBasisMethod(section.get("cost_basis_method", "fifo"))
        self.option_multiplier = section.get("option_multiplier", DEFAULT_OPTION_MULTIPLIER)

    # ------------------------------------------------------------------
    # Legs
    # ------------------------------------------------------------------

    def resolve_leg(
        self,
        user_id: str,
        leg: TradeLeg,
        strategy: Optional[str] = None,
        trade_num: Optional[str] = None,
        leg_index: int = 0,
    ) -> LegEffect:
        """
        Apply one leg to the user's lots.

        Raises:
            OrphanLegError: If a closing leg has no compatible open lot
            NegativeQuantityError: If a lot would go below zero
        """
        if leg.position_effect == PositionEffect.OPEN:
            return self._resolve_open(user_id, leg, strategy, trade_num, leg_index)
        return self._resolve_close(user_id, leg, strategy, trade_num, leg_index)

    def _resolve_open(
        self,
        user_id: str,
        leg: TradeLeg,
        strategy: Optional[str],
        trade_num: Optional[str],
        leg_index: int,
    ) -> LegEffect:
        position_type = leg.position_type
        gross, fees = leg.gross_cents, leg.fee_cents

        # Long lots capitalize fees; short lots carry the net premium received
        if position_type == PositionType.LONG:
            basis = gross + fees
        else:
            basis = gross - fees

        lot = self._open_lot(
            user_id=user_id,
            symbol=leg.symbol,
            option_type=leg.option_type,
            strike=leg.strike,
            expiry=leg.expiry,
            multiplier=leg.multiplier,
            position_type=position_type,
            open_date=leg.date,
            quantity=leg.quantity,
            price=leg.price,
            basis=basis,
            fees=fees,
            strategy=strategy,
            trade_num=trade_num,
            transaction_id=leg.transaction_id,
        )

        account = position_account(leg.option_type, position_type)
        lines = LineBuilder()
        if position_type == PositionType.LONG:
            lines.debit(account, basis).credit(CASH, basis)
        else:
            lines.debit(CASH, basis).credit(account, basis)

        position = self._record_leg(
            user_id, leg, leg_index, strategy, trade_num, account, lot_id=lot.id, realized=0
        )

        return LegEffect(
            lines=lines.build(),
            lots_opened=[lot],
            positions=[position],
            annotations=self._annotation(leg.transaction_id, account),
            account_code=account,
            low_confidence=leg.low_confidence,
        )

    def _resolve_close(
        self,
        user_id: str,
        leg: TradeLeg,
        strategy: Optional[str],
        trade_num: Optional[str],
        leg_index: int,
    ) -> LegEffect:
        position_type = leg.position_type
        lots = self.matching_lots(
            user_id,
            leg.symbol,
            position_type,
            option_type=leg.option_type,
            strike=leg.strike,
            expiry=leg.expiry,
            as_of=leg.date,
        )
        portions = self._take(lots, leg.quantity, leg.describe())

        gross, fees = leg.gross_cents, leg.fee_cents
        close_ref = self._close_ref(leg.transaction_id, trade_num, leg_index)
        weights = [take for _, take in portions]
        account = position_account(leg.option_type, position_type)
        lines = LineBuilder()
        dispositions = []

        if position_type == PositionType.LONG:
            # Fees reduce what the sale realizes
            net_proceeds = gross - fees
            lines.debit(CASH, net_proceeds)
            for (lot, take), proceeds in zip(portions, allocate(net_proceeds, weights)):
                basis = self._release_basis(lot, take)
                disposition = self._dispose(
                    user_id, lot, take, leg.date,
                    proceeds=proceeds,
                    cost_basis=basis,
                    basis_released=basis,
                    kind=DispositionKind.SALE,
                    strategy=strategy,
                    trade_num=trade_num,
                    close_ref=close_ref,
                )
                lines.credit(account, basis)
                lines.credit(disposition.gain_loss_account_code, disposition.realized_gain_loss)
                dispositions.append(disposition)
        else:
            # Buying back a short: the premium received is the amount realized
            close_cost = gross + fees
            lines.credit(CASH, close_cost)
            for (lot, take), cost in zip(portions, allocate(close_cost, weights)):
                premium = self._release_basis(lot, take)
                disposition = self._dispose(
                    user_id, lot, take, leg.date,
                    proceeds=premium,
                    cost_basis=cost,
                    basis_released=premium,
                    kind=DispositionKind.SALE,
                    strategy=strategy,
                    trade_num=trade_num,
                    close_ref=close_ref,
                )
                lines.debit(account, premium)
                lines.credit(disposition.gain_loss_account_code, disposition.realized_gain_loss)
                dispositions.append(disposition)

        realized = sum(d.realized_gain_loss for d in dispositions)
        position = self._record_leg(
            user_id, leg, leg_index, strategy, trade_num, account,
            lot_id=portions[0][0].id, realized=realized,
        )

        return LegEffect(
            lines=lines.build(),
            dispositions=dispositions,
            positions=[position],
            annotations=self._annotation(leg.transaction_id, account),
            account_code=account,
            low_confidence=leg.low_confidence,
        )

    # ------------------------------------------------------------------
    # Assignment / exercise
    # ------------------------------------------------------------------

    def resolve_assignment(
        self,
        user_id: str,
        transfer: InvestmentTransaction,
        stock: InvestmentTransaction,
        strategy: Optional[str] = None,
        trade_num: Optional[str] = None,
    ) -> LegEffect:
        """
        Convert an option lot into stock for an exercise or assignment.

        The option lot portion is closed at zero gain and its premium is
        carried into the stock: added to the basis of shares received by a
        holder, subtracted by a writer; subtracted from the amount realized on
        shares delivered by a holder, added by a writer.

        Args:
            user_id: Owner of the lots
            transfer: Imported exercise/assignment row for the option
            stock: Imported row for the shares bought or sold at the strike

        Raises:
            LegParseError: If the option or share movement cannot be determined
            OrphanLegError: If no matching option lot is open
        """
        guessed = []
        name = transfer.name or ""

        symbol = transfer.underlying_symbol or stock.underlying_symbol or stock.ticker_symbol
        if not symbol:
            symbol = parse_ticker(name) or parse_ticker(stock.name or "")
            guessed.append("symbol")
        if not symbol:
            raise LegParseError(f"Transfer {transfer.id}: cannot determine underlying symbol")
        symbol = symbol.upper()

        option_type = parse_option_type(transfer.option_type or "")
        if option_type is None:
            option_type = parse_option_type(name)
            guessed.append("option_type")
        if option_type is None:
            raise LegParseError(f"Transfer {transfer.id}: cannot determine call/put from {name!r}")

        stock_type = (stock.type or "").lower()
        if stock_type in (TradeAction.BUY.value, TradeAction.SELL.value):
            stock_action = TradeAction(stock_type)
        else:
            stock_action = parse_action(stock.name or "")
            guessed.append("stock_action")
        if stock_action is None:
            raise LegParseError(f"Transaction {stock.id}: cannot determine whether shares were received or delivered")

        shares = abs(stock.quantity or 0)
        if shares <= QUANTITY_EPSILON:
            raise LegParseError(f"Transaction {stock.id}: no share quantity")

        strike = transfer.strike_price
        if strike is None:
            strike = parse_strike(name)
            if strike is None and stock.price:
                strike = abs(stock.price)
            guessed.append("strike")
        if not strike:
            raise LegParseError(f"Transfer {transfer.id}: cannot determine strike price")

        expiry = transfer.expiration_date or parse_expiry(name)

        contracts = shares / self.option_multiplier
        if transfer.quantity and abs(abs(transfer.quantity) - contracts) > QUANTITY_EPSILON:
            logger.warning(
                f"Transfer {transfer.id} lists {abs(transfer.quantity):g} contracts but "
                f"{shares:g} shares moved; using {contracts:g} contracts"
            )

        receiving = stock_action == TradeAction.BUY
        holder = (option_type == OptionType.CALL) == receiving
        option_position = PositionType.LONG if holder else PositionType.SHORT
        kind = DispositionKind.EXERCISE if holder else DispositionKind.ASSIGNMENT
        description = f"{kind.value} {contracts:g} {symbol} {strike:g} {option_type.value.upper()}"

        # Close the option lot portion at zero gain
        option_lots = self.matching_lots(
            user_id, symbol, option_position,
            option_type=option_type, strike=strike, expiry=expiry, as_of=transfer.date,
        )
        option_account = position_account(option_type, option_position)
        option_ref = self._close_ref(transfer.id, trade_num, 0)
        lines = LineBuilder()
        dispositions = []
        premium = 0
        for lot, take in self._take(option_lots, contracts, description):
            basis = self._release_basis(lot, take)
            dispositions.append(self._dispose(
                user_id, lot, take, transfer.date,
                proceeds=basis,
                cost_basis=basis,
                basis_released=basis,
                kind=kind,
                strategy=strategy,
                trade_num=trade_num,
                close_ref=option_ref,
            ))
            premium += basis
        option_lot_id = dispositions[0].lot.id

        if holder:
            lines.credit(option_account, premium)
        else:
            lines.debit(option_account, premium)

        # Premium paid raises the holder's share cost; premium received lowers the writer's
        signed_premium = premium if holder else -premium
        strike_total = gross_cents(strike, shares)
        fees = to_cents(stock.fees or 0) + to_cents(transfer.fees or 0)
        stock_ref = self._close_ref(stock.id, trade_num, 1)
        lots_opened = []

        if receiving:
            total_cost = strike_total + fees + signed_premium
            lines.credit(CASH, strike_total + fees)
            shorts = self.matching_lots(user_id, symbol, PositionType.SHORT, as_of=stock.date)
            covered = min(shares, sum(lot.quantity_remaining for lot in shorts))
            portions = self._take(shorts, covered, description) if covered > QUANTITY_EPSILON else []
            remainder = shares - covered
            weights = [take for _, take in portions] + ([remainder] if remainder > QUANTITY_EPSILON else [])
            amounts = allocate(total_cost, weights)
            for (lot, take), cost in zip(portions, amounts):
                proceeds = self._release_basis(lot, take)
                disposition = self._dispose(
                    user_id, lot, take, stock.date,
                    proceeds=proceeds,
                    cost_basis=cost,
                    basis_released=proceeds,
                    kind=DispositionKind.SALE,
                    strategy=strategy,
                    trade_num=trade_num,
                    close_ref=stock_ref,
                )
                lines.debit(SHORT_STOCK, proceeds)
                lines.credit(disposition.gain_loss_account_code, disposition.realized_gain_loss)
                dispositions.append(disposition)
            if remainder > QUANTITY_EPSILON:
                lots_opened.append(self._open_lot(
                    user_id=user_id,
                    symbol=symbol,
                    option_type=None,
                    strike=None,
                    expiry=None,
                    multiplier=1,
                    position_type=PositionType.LONG,
                    open_date=stock.date,
                    quantity=remainder,
                    price=strike,
                    basis=amounts[-1],
                    fees=fees,
                    strategy=strategy,
                    trade_num=trade_num,
                    transaction_id=stock.id,
                ))
                lines.debit(LONG_STOCK, amounts[-1])
            stock_account = LONG_STOCK if remainder > QUANTITY_EPSILON else SHORT_STOCK
        else:
            amount_realized = strike_total - fees - signed_premium
            lines.debit(CASH, strike_total - fees)
            longs = self.matching_lots(user_id, symbol, PositionType.LONG, as_of=stock.date)
            sold = min(shares, sum(lot.quantity_remaining for lot in longs))
            portions = self._take(longs, sold, description) if sold > QUANTITY_EPSILON else []
            remainder = shares - sold
            weights = [take for _, take in portions] + ([remainder] if remainder > QUANTITY_EPSILON else [])
            amounts = allocate(amount_realized, weights)
            for (lot, take), proceeds in zip(portions, amounts):
                basis = self._release_basis(lot, take)
                disposition = self._dispose(
                    user_id, lot, take, stock.date,
                    proceeds=proceeds,
                    cost_basis=basis,
                    basis_released=basis,
                    kind=DispositionKind.SALE,
                    strategy=strategy,
                    trade_num=trade_num,
                    close_ref=stock_ref,
                )
                lines.credit(LONG_STOCK, basis)
                lines.credit(disposition.gain_loss_account_code, disposition.realized_gain_loss)
                dispositions.append(disposition)
            if remainder > QUANTITY_EPSILON:
                # Delivering shares not held opens a short stock position
                lots_opened.append(self._open_lot(
                    user_id=user_id,
                    symbol=symbol,
                    option_type=None,
                    strike=None,
                    expiry=None,
                    multiplier=1,
                    position_type=PositionType.SHORT,
                    open_date=stock.date,
                    quantity=remainder,
                    price=strike,
                    basis=amounts[-1],
                    fees=fees,
                    strategy=strategy,
                    trade_num=trade_num,
                    transaction_id=stock.id,
                ))
                lines.credit(SHORT_STOCK, amounts[-1])
            stock_account = SHORT_STOCK if remainder > QUANTITY_EPSILON else LONG_STOCK

        stock_realized = sum(d.realized_gain_loss for d in dispositions if d.kind == DispositionKind.SALE)
        positions = [
            self._add_position(
                user_id=user_id,
                trade_num=trade_num,
                leg_index=0,
                trade_date=transfer.date,
                symbol=symbol,
                option_type=option_type,
                strike=strike,
                expiry=expiry,
                action=TradeAction.SELL if holder else TradeAction.BUY,
                position_effect=PositionEffect.CLOSE,
                quantity=contracts,
                close_price=0.0,
                strategy=strategy,
                account_code=option_account,
                lot_id=option_lot_id,
                transaction_id=transfer.id,
                low_confidence=bool(guessed),
            ),
            self._add_position(
                user_id=user_id,
                trade_num=trade_num,
                leg_index=1,
                trade_date=stock.date,
                symbol=symbol,
                action=stock_action,
                position_effect=PositionEffect.OPEN if lots_opened else PositionEffect.CLOSE,
                quantity=shares,
                open_price=strike if lots_opened else None,
                close_price=None if lots_opened else strike,
                fees=fees,
                realized=stock_realized,
                strategy=strategy,
                account_code=stock_account,
                lot_id=lots_opened[0].id if lots_opened else None,
                transaction_id=stock.id,
                low_confidence=bool(guessed),
            ),
        ]

        if guessed:
            logger.warning(
                f"Assignment {transfer.id}/{stock.id}: inferred {', '.join(guessed)} from names",
                extra={"transaction_id": transfer.id, "inferred_fields": guessed},
            )

        logger.info(
            f"{kind.value.title()}: {contracts:g} {symbol} {strike:g} {option_type.value} -> "
            f"{stock_action.value} {shares:g} shares, premium {premium} cents carried"
        )

        annotations = {transfer.id: option_account, stock.id: stock_account}
        return LegEffect(
            lines=lines.build(),
            lots_opened=lots_opened,
            dispositions=dispositions,
            positions=positions,
            annotations=annotations,
            account_code=stock_account,
            low_confidence=bool(guessed),
        )

    # ------------------------------------------------------------------
    # Lots
    # ------------------------------------------------------------------

    def matching_lots(
        self,
        user_id: str,
        symbol: str,
        position_type: PositionType,
        option_type: Optional[OptionType] = None,
        strike: Optional[float] = None,
        expiry: Optional[dt.date] = None,
        as_of: Optional[dt.date] = None,
    ) -> list[StockLot]:
        """Open lots of one instrument, in the order a close consumes them.

        A missing strike or expiry matches any value.
        """
        stmt = select(StockLot).where(
            StockLot.user_id == user_id,
            StockLot.symbol == symbol.upper(),
            StockLot.position_type == position_type,
            StockLot.status != LotStatus.CLOSED,
            StockLot.quantity_remaining > QUANTITY_EPSILON,
        )
        if option_type is None:
            stmt = stmt.where(StockLot.option_type.is_(None))
        else:
            stmt = stmt.where(StockLot.option_type == option_type)
            if expiry is not None:
                stmt = stmt.where(StockLot.expiry == expiry)
        if as_of is not None:
            stmt = stmt.where(StockLot.open_date <= as_of)

        lots = [lot for lot in self.session.scalars(stmt) if _same_strike(lot.strike, strike)]
        return self._order_lots(lots)

    def _order_lots(self, lots: list[StockLot]) -> list[StockLot]:
        """Order lots by the configured cost basis method."""
        if self.cost_basis_method == CostBasisMethod.LIFO:
            return sorted(lots, key=lambda l: (l.open_date, l.id), reverse=True)

        if self.cost_basis_method == CostBasisMethod.HIFO:
            # Highest remaining basis per unit first
            return sorted(
                lots,
                key=lambda l: (-(l.remaining_basis / l.quantity_remaining), l.open_date, l.id),
            )

        return sorted(lots, key=lambda l: (l.open_date, l.id))

    def _take(
        self,
        lots: list[StockLot],
        quantity: float,
        description: str,
    ) -> list[tuple[StockLot, float]]:
        """Split ``quantity`` across ordered lots."""
        if not lots:
            raise OrphanLegError(f"No open lot to close: {description}")

        available = sum(lot.quantity_remaining for lot in lots)
        if quantity - available > QUANTITY_EPSILON:
            raise OrphanLegError(
                f"Closing {quantity:g} exceeds open quantity {available:g}: {description}"
            )

        portions = []
        remaining = quantity
        for lot in lots:
            if remaining <= QUANTITY_EPSILON:
                break
            take = min(remaining, lot.quantity_remaining)
            portions.append((lot, take))
            remaining -= take
        return portions

    @staticmethod
    def _release_basis(lot: StockLot, quantity: float) -> int:
        """Basis for ``quantity`` of the lot; the final portion takes what is left."""
        if quantity >= lot.quantity_remaining - QUANTITY_EPSILON:
            return lot.remaining_basis
        return prorate(lot.remaining_basis, quantity, lot.quantity_remaining)

    def _dispose(
        self,
        user_id: str,
        lot: StockLot,
        quantity: float,
        close_date: dt.date,
        proceeds: int,
        cost_basis: int,
        basis_released: int,
        kind: DispositionKind,
        strategy: Optional[str],
        trade_num: Optional[str],
        close_ref: str,
    ) -> LotDisposition:
        gain_loss = proceeds - cost_basis
        long_term = lot.position_type == PositionType.LONG and is_long_term(lot.open_date, close_date)
        account = None
        if kind == DispositionKind.SALE:
            account = gain_loss_account(lot.is_option, gain_loss >= 0, long_term, strategy)

        lot.basis_released += basis_released
        lot.consume(quantity, close_date)

        disposition = LotDisposition(
            user_id=user_id,
            lot=lot,
            kind=kind,
            close_date=close_date,
            quantity=quantity,
            proceeds=proceeds,
            cost_basis=cost_basis,
            realized_gain_loss=gain_loss,
            is_long_term=long_term,
            holding_days=(close_date - lot.open_date).days,
            gain_loss_account_code=account,
            close_ref=close_ref,
            strategy=strategy,
            trade_num=trade_num,
        )
        self.session.add(disposition)

        log_disposition(logger, lot.id, lot.symbol, quantity, gain_loss, kind=kind.value)
        return disposition

    def _open_lot(
        self,
        user_id: str,
        symbol: str,
        option_type: Optional[OptionType],
        strike: Optional[float],
        expiry: Optional[dt.date],
        multiplier: int,
        position_type: PositionType,
        open_date: dt.date,
        quantity: float,
        price: float,
        basis: int,
        fees: int,
        strategy: Optional[str],
        trade_num: Optional[str],
        transaction_id: Optional[int],
    ) -> StockLot:
        existing = self._consolidation_target(
            user_id, symbol, option_type, strike, expiry, multiplier, position_type, open_date
        )
        if existing is not None:
            total = existing.original_quantity + quantity
            existing.open_price = (
                existing.open_price * existing.original_quantity + price * quantity
            ) / total
            existing.original_quantity = total
            existing.quantity_remaining = total
            existing.cost_basis += basis
            existing.fees += fees
            logger.info(f"Added {quantity:g} to lot {existing.id} ({existing.describe()})")
            return existing

        lot = StockLot(
            user_id=user_id,
            symbol=symbol.upper(),
            option_type=option_type,
            strike=strike,
            expiry=expiry,
            multiplier=multiplier,
            position_type=position_type,
            open_date=open_date,
            original_quantity=quantity,
            quantity_remaining=quantity,
            open_price=price,
            cost_basis=basis,
            fees=fees,
            basis_released=0,
            wash_sale_adjustment=0,
            replacement_quantity_used=0.0,
            status=LotStatus.OPEN,
            strategy=strategy,
            trade_num=trade_num,
            open_transaction_id=transaction_id,
        )
        self.session.add(lot)
        self.session.flush()

        logger.info(
            f"Opened {position_type.value} lot {lot.id}: {lot.describe()} @ {price:g}, "
            f"basis {basis} cents"
        )
        return lot

    def _consolidation_target(
        self,
        user_id: str,
        symbol: str,
        option_type: Optional[OptionType],
        strike: Optional[float],
        expiry: Optional[dt.date],
        multiplier: int,
        position_type: PositionType,
        open_date: dt.date,
    ) -> Optional[StockLot]:
        """An untouched lot of the same instrument opened the same day."""
        stmt = select(StockLot).where(
            StockLot.user_id == user_id,
            StockLot.symbol == symbol.upper(),
            StockLot.position_type == position_type,
            StockLot.open_date == open_date,
            StockLot.multiplier == multiplier,
            StockLot.status == LotStatus.OPEN,
        )
        if option_type is None:
            stmt = stmt.where(StockLot.option_type.is_(None))
        else:
            stmt = stmt.where(StockLot.option_type == option_type)
            stmt = stmt.where(
                StockLot.expiry.is_(None) if expiry is None else StockLot.expiry == expiry
            )

        for lot in self.session.scalars(stmt.order_by(StockLot.id)):
            strike_matches = (
                lot.strike is None and strike is None
            ) or (
                lot.strike is not None and strike is not None
                and abs(lot.strike - strike) < _STRIKE_TOLERANCE
            )
            if strike_matches and lot.is_untouched:
                return lot
        return None

    # ------------------------------------------------------------------
    # Per-leg records
    # ------------------------------------------------------------------

    def _record_leg(
        self,
        user_id: str,
        leg: TradeLeg,
        leg_index: int,
        strategy: Optional[str],
        trade_num: Optional[str],
        account_code: str,
        lot_id: Optional[int],
        realized: int,
    ) -> TradingPosition:
        opening = leg.position_effect == PositionEffect.OPEN
        return self._add_position(
            user_id=user_id,
            trade_num=trade_num,
            leg_index=leg_index,
            trade_date=leg.date,
            symbol=leg.symbol,
            option_type=leg.option_type,
            strike=leg.strike,
            expiry=leg.expiry,
            action=leg.action,
            position_effect=leg.position_effect,
            quantity=leg.quantity,
            open_price=leg.price if opening else None,
            close_price=None if opening else leg.price,
            fees=leg.fee_cents,
            realized=realized,
            strategy=strategy,
            account_code=account_code,
            lot_id=lot_id,
            transaction_id=leg.transaction_id,
            low_confidence=leg.low_confidence,
        )

    def _add_position(
        self,
        user_id: str,
        trade_num: Optional[str],
        leg_index: int,
        trade_date: dt.date,
        symbol: str,
        action: TradeAction,
        position_effect: PositionEffect,
        quantity: float,
        option_type: Optional[OptionType] = None,
        strike: Optional[float] = None,
        expiry: Optional[dt.date] = None,
        open_price: Optional[float] = None,
        close_price: Optional[float] = None,
        fees: int = 0,
        realized: int = 0,
        strategy: Optional[str] = None,
        account_code: Optional[str] = None,
        lot_id: Optional[int] = None,
        transaction_id: Optional[int] = None,
        low_confidence: bool = False,
    ) -> TradingPosition:
        position = TradingPosition(
            user_id=user_id,
            trade_num=trade_num or "",
            leg_index=leg_index,
            trade_date=trade_date,
            symbol=symbol,
            option_type=option_type,
            strike=strike,
            expiry=expiry,
            action=action,
            position_effect=position_effect,
            quantity=quantity,
            open_price=open_price,
            close_price=close_price,
            fees=fees,
            realized_gain_loss=realized,
            strategy=strategy,
            account_code=account_code,
            lot_id=lot_id,
            transaction_id=transaction_id,
            low_confidence=low_confidence,
        )
        self.session.add(position)
        return position

    @staticmethod
    def _close_ref(transaction_id: Optional[int], trade_num: Optional[str], leg_index: int) -> str:
        if transaction_id is not None:
            return f"txn:{transaction_id}"
        return f"{trade_num}#{leg_index}"

    @staticmethod
    def _annotation(transaction_id: Optional[int], account_code: str) -> dict[int, str]:
        return {transaction_id: account_code} if transaction_id is not None else {}
