"""Wash-sale adjustments and tax reporting."""

from .wash_sale import (
    WashSaleApplyResult,
    WashSaleDetector,
    WashSaleReport,
    WashSaleViolation,
)
from .reports import (
    FORM_8949_COLUMNS,
    Form8949Row,
    ScheduleD,
    ScheduleDLine,
    TaxReport,
    TaxReportGenerator,
    generate_form8949_csv,
    generate_schedule_d,
)

__all__ = [
    "WashSaleApplyResult",
    "WashSaleDetector",
    "WashSaleReport",
    "WashSaleViolation",
    "FORM_8949_COLUMNS",
    "Form8949Row",
    "ScheduleD",
    "ScheduleDLine",
    "TaxReport",
    "TaxReportGenerator",
    "generate_form8949_csv",
    "generate_schedule_d",
]
