"""
Form 8949 rows and Schedule D totals.

Rows are projected from sale dispositions after wash-sale adjustments.
Exercise and assignment conversions carry no gain of their own and are left
out; their effect is already inside the resulting stock lot's basis.
"""

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import pandas as pd
from sqlalchemy import extract, select
from sqlalchemy.orm import selectinload, sessionmaker

from tradeledger.config.validator import default_settings
from tradeledger.database.models import DispositionKind, LotDisposition
from tradeledger.utils.money import cents_to_dollars

logger = logging.getLogger(__name__)

WASH_SALE_CODE = "W"

FORM_8949_COLUMNS = [
    "Description of Property",
    "Date Acquired",
    "Date Sold",
    "Proceeds",
    "Cost or Other Basis",
    "Adjustment Code",
    "Adjustment Amount",
    "Gain or Loss",
    "Short/Long Term",
    "Box",
]


@dataclass
class Form8949Row:
    """One disposition as reported on Form 8949. Amounts are in cents."""
    description: str
    date_acquired: dt.date
    date_sold: dt.date
    proceeds: int
    cost_basis: int
    adjustment_code: str
    adjustment_amount: int
    gain_or_loss: int
    is_long_term: bool
    holding_days: int
    symbol: str
    asset_type: str  # "stock" or "option"
    box: str
    disposition_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "date_acquired": self.date_acquired.isoformat(),
            "date_sold": self.date_sold.isoformat(),
            "proceeds": cents_to_dollars(self.proceeds),
            "cost_basis": cents_to_dollars(self.cost_basis),
            "adjustment_code": self.adjustment_code,
            "adjustment_amount": cents_to_dollars(self.adjustment_amount),
            "gain_or_loss": cents_to_dollars(self.gain_or_loss),
            "is_long_term": self.is_long_term,
            "holding_days": self.holding_days,
            "symbol": self.symbol,
            "asset_type": self.asset_type,
            "box": self.box,
        }


@dataclass
class ScheduleDLine:
    line: str
    description: str
    proceeds: int = 0
    cost_basis: int = 0
    adjustments: int = 0
    gain_or_loss: int = 0

    def add(self, other: "ScheduleDLine") -> None:
        self.proceeds += other.proceeds
        self.cost_basis += other.cost_basis
        self.adjustments += other.adjustments
        self.gain_or_loss += other.gain_or_loss

    def to_dict(self) -> dict[str, Any]:
        return {
            "line": self.line,
            "description": self.description,
            "proceeds": cents_to_dollars(self.proceeds),
            "cost_basis": cents_to_dollars(self.cost_basis),
            "adjustments": cents_to_dollars(self.adjustments),
            "gain_or_loss": cents_to_dollars(self.gain_or_loss),
        }


@dataclass
class ScheduleD:
    lines: dict[str, ScheduleDLine] = field(default_factory=dict)

    def __getitem__(self, line: str) -> ScheduleDLine:
        return self.lines[line]

    def to_dict(self) -> dict[str, Any]:
        return {
            "part_i": {key: self.lines[key].to_dict() for key in ("1a", "1b", "1c", "7")},
            "part_ii": {key: self.lines[key].to_dict() for key in ("8a", "8b", "8c", "15")},
            "line_16": self.lines["16"].to_dict(),
        }


@dataclass
class TaxReport:
    tax_year: int
    rows: list[Form8949Row]
    schedule_d: ScheduleD
    available_years: list[int]

    @property
    def short_term(self) -> list[Form8949Row]:
        return [row for row in self.rows if not row.is_long_term]

    @property
    def long_term(self) -> list[Form8949Row]:
        return [row for row in self.rows if row.is_long_term]

    @property
    def summary(self) -> dict[str, Any]:
        wash_sales = [row for row in self.rows if row.adjustment_code == WASH_SALE_CODE]
        return {
            "total_dispositions": len(self.rows),
            "short_term_count": len(self.short_term),
            "long_term_count": len(self.long_term),
            "total_proceeds": cents_to_dollars(sum(row.proceeds for row in self.rows)),
            "total_cost_basis": cents_to_dollars(sum(row.cost_basis for row in self.rows)),
            "total_adjustments": cents_to_dollars(sum(row.adjustment_amount for row in self.rows)),
            "net_gain_or_loss": cents_to_dollars(self.schedule_d["16"].gain_or_loss),
            "wash_sale_count": len(wash_sales),
            "wash_sale_disallowed": cents_to_dollars(sum(row.adjustment_amount for row in wash_sales)),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "tax_year": self.tax_year,
            "form_8949": {
                "short_term": [row.to_dict() for row in self.short_term],
                "long_term": [row.to_dict() for row in self.long_term],
            },
            "schedule_d": self.schedule_d.to_dict(),
            "summary": self.summary,
            "available_years": self.available_years,
        }


def generate_form8949_csv(rows: list[Form8949Row]) -> str:
    """
    Serialize rows in the standard Form 8949 import layout.

    Pure function of ``rows``: the output order is the input order.
    """
    frame = pd.DataFrame(
        [
            [
                row.description,
                row.date_acquired.isoformat(),
                row.date_sold.isoformat(),
                f"{row.proceeds / 100:.2f}",
                f"{row.cost_basis / 100:.2f}",
                row.adjustment_code,
                f"{row.adjustment_amount / 100:.2f}" if row.adjustment_amount else "",
                f"{row.gain_or_loss / 100:.2f}",
                "Long-term" if row.is_long_term else "Short-term",
                row.box,
            ]
            for row in rows
        ],
        columns=FORM_8949_COLUMNS,
    )
    return frame.to_csv(index=False, lineterminator="\n")


def generate_schedule_d(rows: list[Form8949Row]) -> ScheduleD:
    """Roll Form 8949 rows up into Schedule D lines by term and box."""
    schedule = ScheduleD()
    for term_lines, total_line, term, is_long in (
        (("1a", "1b", "1c"), "7", "Short-term", False),
        (("8a", "8b", "8c"), "15", "Long-term", True),
    ):
        total = ScheduleDLine(total_line, f"Net {term.lower()} capital gain or (loss)")
        for line, box in zip(term_lines, ("A", "B", "C")):
            subtotal = ScheduleDLine(line, f"{term} from Form 8949 Box {box}")
            for row in rows:
                if row.is_long_term == is_long and row.box == box:
                    subtotal.proceeds += row.proceeds
                    subtotal.cost_basis += row.cost_basis
                    subtotal.adjustments += row.adjustment_amount
                    subtotal.gain_or_loss += row.gain_or_loss
            schedule.lines[line] = subtotal
            total.add(subtotal)
        schedule.lines[total_line] = total

    net = ScheduleDLine("16", "Net capital gain or (loss)")
    net.add(schedule.lines["7"])
    net.add(schedule.lines["15"])
    schedule.lines["16"] = net
    return schedule


class TaxReportGenerator:
    """Builds Form 8949 and Schedule D output for one user and tax year."""

    def __init__(self, session_factory: sessionmaker, settings: Optional[dict] = None):
        self.session_factory = session_factory
        self.settings = settings or default_settings()
        self.default_box = self.settings.get("tax", {}).get("default_box", "A")

    def generate_form8949(self, user_id: str, tax_year: int) -> list[Form8949Row]:
        """
        Rows for every sale disposition closed within ``tax_year``.

        Gain or loss is proceeds - cost basis + adjustment, where the
        adjustment is the wash-sale disallowed amount (code ``W``).
        """
        start = dt.date(tax_year, 1, 1)
        end = dt.date(tax_year + 1, 1, 1)
        with self.session_factory() as session:
            dispositions = list(session.scalars(
                select(LotDisposition)
                .where(
                    LotDisposition.user_id == user_id,
                    LotDisposition.kind == DispositionKind.SALE,
                    LotDisposition.close_date >= start,
                    LotDisposition.close_date < end,
                )
                .options(selectinload(LotDisposition.lot))
                .order_by(LotDisposition.close_date, LotDisposition.id)
            ))
            rows = [self._row(d) for d in dispositions]

        logger.info(f"Built {len(rows)} Form 8949 row(s) for user {user_id}, tax year {tax_year}")
        return rows

    def _row(self, disposition: LotDisposition) -> Form8949Row:
        lot = disposition.lot
        adjustment = disposition.disallowed_amount if disposition.loss_disallowed else 0
        return Form8949Row(
            description=lot.describe(disposition.quantity),
            date_acquired=lot.open_date,
            date_sold=disposition.close_date,
            proceeds=disposition.proceeds,
            cost_basis=disposition.cost_basis,
            adjustment_code=WASH_SALE_CODE if disposition.loss_disallowed else "",
            adjustment_amount=adjustment,
            gain_or_loss=disposition.proceeds - disposition.cost_basis + adjustment,
            is_long_term=disposition.is_long_term,
            holding_days=disposition.holding_days,
            symbol=lot.symbol,
            asset_type="option" if lot.is_option else "stock",
            box=self.default_box,
            disposition_id=disposition.id,
        )

    def available_years(self, user_id: str) -> list[int]:
        """Years with at least one sale disposition, newest first."""
        year = extract("year", LotDisposition.close_date)
        with self.session_factory() as session:
            years = session.scalars(
                select(year)
                .where(
                    LotDisposition.user_id == user_id,
                    LotDisposition.kind == DispositionKind.SALE,
                )
                .distinct()
            )
            return sorted({int(y) for y in years}, reverse=True)

    def generate_tax_report(self, user_id: str, tax_year: int) -> TaxReport:
        rows = self.generate_form8949(user_id, tax_year)
        years = self.available_years(user_id)
        if tax_year not in years:
            years = sorted(years + [tax_year], reverse=True)
        return TaxReport(
            tax_year=tax_year,
            rows=rows,
            schedule_d=generate_schedule_d(rows),
            available_years=years,
        )
