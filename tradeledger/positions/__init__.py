"""Position and lot tracking."""

from .legs import TradeLeg, leg_from_transaction
from .tracker import (
    CostBasisMethod,
    LegEffect,
    PositionTracker,
    is_long_term,
    one_year_after,
)
from .classifier import classify_strategy
from .categorization import CategorizationJob, CategorizationSummary
from .summary import positions_summary

__all__ = [
    "TradeLeg",
    "leg_from_transaction",
    "CostBasisMethod",
    "LegEffect",
    "PositionTracker",
    "is_long_term",
    "one_year_after",
    "classify_strategy",
    "CategorizationJob",
    "CategorizationSummary",
    "positions_summary",
]
