"""Open-position and realized P&L view per symbol."""

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from tradeledger.database.models import (
    QUANTITY_EPSILON,
    DispositionKind,
    LotDisposition,
    PositionType,
    StockLot,
)

SUMMARY_COLUMNS = [
    "symbol",
    "open_lots",
    "long_shares",
    "short_shares",
    "long_contracts",
    "short_contracts",
    "open_cost_basis",
    "realized_gain_loss",
    "disallowed_losses",
]


def positions_summary(session: Session, user_id: str) -> pd.DataFrame:
    """
    Summarize a user's lots by underlying symbol.

    Amounts are in dollars. Short lots contribute their remaining premium
    as a negative cost basis.
    """
    lots = list(session.scalars(select(StockLot).where(StockLot.user_id == user_id)))
    dispositions = list(session.scalars(
        select(LotDisposition).where(
            LotDisposition.user_id == user_id,
            LotDisposition.kind == DispositionKind.SALE,
        )
    ))

    lot_frame = pd.DataFrame([
        {
            "symbol": lot.symbol,
            "open_lots": int(lot.quantity_remaining > QUANTITY_EPSILON),
            "long_shares": lot.quantity_remaining
            if not lot.is_option and lot.position_type == PositionType.LONG else 0.0,
            "short_shares": lot.quantity_remaining
            if not lot.is_option and lot.position_type == PositionType.SHORT else 0.0,
            "long_contracts": lot.quantity_remaining
            if lot.is_option and lot.position_type == PositionType.LONG else 0.0,
            "short_contracts": lot.quantity_remaining
            if lot.is_option and lot.position_type == PositionType.SHORT else 0.0,
            "open_cost_basis": (
                lot.remaining_basis if lot.position_type == PositionType.LONG else -lot.remaining_basis
            ) / 100,
        }
        for lot in lots
    ], columns=SUMMARY_COLUMNS[:7])

    realized_frame = pd.DataFrame([
        {
            "symbol": d.lot.symbol,
            "realized_gain_loss": d.realized_gain_loss / 100,
            "disallowed_losses": d.disallowed_amount / 100,
        }
        for d in dispositions
    ], columns=["symbol", "realized_gain_loss", "disallowed_losses"])

    if lot_frame.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS).set_index("symbol")

    summary = lot_frame.groupby("symbol").sum()
    realized = realized_frame.groupby("symbol").sum()
    summary = summary.join(realized, how="left").fillna(
        {"realized_gain_loss": 0.0, "disallowed_losses": 0.0}
    )
    summary = summary.astype({"realized_gain_loss": float, "disallowed_losses": float})
    return summary.round(2).sort_index()
