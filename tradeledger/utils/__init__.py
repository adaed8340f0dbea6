"""Utility modules for the ledger services."""

from .retry import run_with_retry, RetryConfig, CONFLICT_EXCEPTIONS
from .logging import (
    setup_logging,
    setup_logging_from_settings,
    get_logger,
    LogContext,
    LedgerLogger,
    JSONFormatter,
    log_posting,
    log_disposition,
    log_wash_sale,
)
from .money import (
    to_cents,
    gross_cents,
    cents_to_dollars,
    format_dollars,
    prorate,
    allocate,
)

__all__ = [
    "run_with_retry",
    "RetryConfig",
    "CONFLICT_EXCEPTIONS",
    "setup_logging",
    "setup_logging_from_settings",
    "get_logger",
    "LogContext",
    "LedgerLogger",
    "JSONFormatter",
    "log_posting",
    "log_disposition",
    "log_wash_sale",
    "to_cents",
    "gross_cents",
    "cents_to_dollars",
    "format_dollars",
    "prorate",
    "allocate",
]
