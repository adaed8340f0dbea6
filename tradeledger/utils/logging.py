"""Structured JSON logging for the ledger services.

Every module logs through ``logging.getLogger(__name__)``; records propagate
to the ``tradeledger`` package logger configured here. Posting, lot and
wash-sale events carry their identifiers as record attributes so the JSON
log can be filtered by journal, lot or user.
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

ROOT_LOGGER_NAME = "tradeledger"

# Attributes every LogRecord has; anything else came from ``extra=`` or context
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, extra attributes included."""

    def __init__(
        self,
        include_timestamp: bool = True,
        include_level: bool = True,
        include_logger: bool = True,
        include_location: bool = False,
        extra_fields: Optional[dict] = None,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_level = include_level
        self.include_logger = include_logger
        self.include_location = include_location
        self.extra_fields = extra_fields or {}

    def _header(self, record: logging.LogRecord) -> dict[str, Any]:
        header: dict[str, Any] = {}
        if self.include_timestamp:
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            header["timestamp"] = created.strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z"
        if self.include_level:
            header["level"] = record.levelname
        if self.include_logger:
            header["logger"] = record.name
        if self.include_location:
            header["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        return header

    @staticmethod
    def _jsonable(value: Any) -> Any:
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            return str(value)
        return value

    def format(self, record: logging.LogRecord) -> str:
        log_data = self._header(record)
        log_data["message"] = record.getMessage()

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(
            (key, self._jsonable(value))
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        )
        for key, value in self.extra_fields.items():
            log_data.setdefault(key, value)

        return json.dumps(log_data, default=str)


class LedgerContextFilter(logging.Filter):
    """Stamps the current thread's ledger context (user, trade number) on records."""

    _local = threading.local()

    @classmethod
    def _data(cls) -> dict:
        if not hasattr(cls._local, "data"):
            cls._local.data = {}
        return cls._local.data

    @classmethod
    def set_context(cls, **kwargs) -> None:
        cls._data().update(kwargs)

    @classmethod
    def clear_context(cls) -> None:
        cls._local.data = {}

    @classmethod
    def get_context(cls) -> dict:
        return dict(cls._data())

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self._data().items():
            setattr(record, key, value)
        return True


class LogContext:
    """Scoped ledger context; the previous context is restored on exit."""

    def __init__(self, **kwargs):
        self.context = kwargs
        self.saved: dict = {}

    def __enter__(self):
        self.saved = LedgerContextFilter.get_context()
        LedgerContextFilter.set_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        LedgerContextFilter.clear_context()
        LedgerContextFilter.set_context(**self.saved)
        return False


class LedgerLogger:
    """
    The package logger with its console and rotating file handlers.

    The context filter sits on the handlers rather than the logger so that
    records from child loggers pick it up too.
    """

    def __init__(
        self,
        name: str = ROOT_LOGGER_NAME,
        level: str = "INFO",
        log_file: Optional[str] = None,
        json_format: bool = True,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        console_output: bool = True,
    ):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers = []
        self.context_filter = LedgerContextFilter()

        if json_format:
            self.formatter = JSONFormatter(include_location=True)
        else:
            self.formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        if console_output:
            self._attach(logging.StreamHandler(sys.stdout))

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            self._attach(RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count))

    def _attach(self, handler: logging.Handler) -> None:
        handler.setFormatter(self.formatter)
        handler.addFilter(self.context_filter)
        self.logger.addHandler(handler)

    def set_context(self, **kwargs) -> None:
        LedgerContextFilter.set_context(**kwargs)

    def clear_context(self) -> None:
        LedgerContextFilter.clear_context()

    def get_logger(self) -> logging.Logger:
        return self.logger


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = True,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the ``tradeledger`` package logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Rotating log file path, or None for no file
        json_format: Use JSON formatting
        console_output: Also log to stdout

    Returns:
        The package logger
    """
    return LedgerLogger(
        name=ROOT_LOGGER_NAME,
        level=level,
        log_file=log_file,
        json_format=json_format,
        console_output=console_output,
    ).get_logger()


def setup_logging_from_settings(settings: dict, verbose: bool = False) -> logging.Logger:
    """
    Configure logging from the ``logging`` section of validated settings.

    ``verbose`` forces DEBUG and echoes records to stdout; otherwise the
    console stays quiet and records go only to the configured file.
    """
    section = settings.get("logging", {})
    return setup_logging(
        level="DEBUG" if verbose else section.get("level", "INFO"),
        log_file=section.get("file"),
        json_format=section.get("json_format", True),
        console_output=verbose,
    )


def get_logger(name: str) -> logging.Logger:
    """Child of the package logger."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def _log_event(logger: logging.Logger, level: int, event_type: str, message: str, **fields) -> None:
    logger.log(level, message, extra={"event_type": event_type, **fields})


def log_posting(
    logger: logging.Logger,
    journal_id: str,
    description: str,
    total: int,
    line_count: int,
    **kwargs,
) -> None:
    """A journal transaction was posted."""
    _log_event(
        logger, logging.INFO, "posting",
        f"Posted journal {journal_id}: {description} ({line_count} lines, {total} cents)",
        journal_id=journal_id, total_cents=total, line_count=line_count, **kwargs,
    )


def log_disposition(
    logger: logging.Logger,
    lot_id: int,
    symbol: str,
    quantity: float,
    gain_loss: int,
    **kwargs,
) -> None:
    """Part of a lot was closed."""
    _log_event(
        logger, logging.DEBUG, "disposition",
        f"Disposed {quantity} from lot {lot_id} ({symbol}): gain/loss {gain_loss} cents",
        lot_id=lot_id, symbol=symbol, quantity=quantity, gain_loss_cents=gain_loss, **kwargs,
    )


def log_wash_sale(
    logger: logging.Logger,
    symbol: str,
    disposition_id: int,
    replacement_lot_id: int,
    disallowed: int,
    **kwargs,
) -> None:
    """A wash sale was detected or applied."""
    _log_event(
        logger, logging.WARNING, "wash_sale",
        f"Wash sale for {symbol}: disposition {disposition_id} -> lot "
        f"{replacement_lot_id}, {disallowed} cents disallowed",
        symbol=symbol, disposition_id=disposition_id,
        replacement_lot_id=replacement_lot_id, disallowed_cents=disallowed, **kwargs,
    )
