"""Tests for structured JSON logging."""

import json
import logging
import logging.handlers
import tempfile
from pathlib import Path

from tradeledger.utils.logging import (
    JSONFormatter,
    LedgerContextFilter,
    LedgerLogger,
    LogContext,
    get_logger,
    log_disposition,
    log_posting,
    log_wash_sale,
    setup_logging,
    setup_logging_from_settings,
)


def make_record(msg="Test message", args=()):
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=args,
        exc_info=None,
    )


class TestJSONFormatter:
    """Tests for JSON log formatter."""

    def test_basic_format(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["message"] == "Test message"
        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["timestamp"].endswith("Z")

    def test_format_with_args(self):
        data = json.loads(JSONFormatter().format(make_record("Journal %d", (42,))))
        assert data["message"] == "Journal 42"

    def test_format_with_extra_fields(self):
        record = make_record()
        record.trade_num = "T-1"
        record.total_cents = 15000

        data = json.loads(JSONFormatter().format(record))

        assert data["trade_num"] == "T-1"
        assert data["total_cents"] == 15000

    def test_unserializable_extra_is_stringified(self):
        record = make_record()
        record.lot = object()

        data = json.loads(JSONFormatter().format(record))

        assert data["lot"].startswith("<object object")

    def test_format_with_location(self):
        data = json.loads(JSONFormatter(include_location=True).format(make_record()))

        assert data["location"]["file"] == "test.py"
        assert data["location"]["line"] == 10

    def test_format_without_optional_fields(self):
        formatter = JSONFormatter(include_timestamp=False, include_level=False, include_logger=False)
        data = json.loads(formatter.format(make_record()))

        assert "timestamp" not in data
        assert "level" not in data
        assert "logger" not in data

    def test_format_with_exception(self):
        try:
            raise ValueError("bad leg")
        except ValueError:
            import sys
            record = logging.LogRecord(
                name="test",
                level=logging.ERROR,
                pathname="test.py",
                lineno=10,
                msg="Commit failed",
                args=(),
                exc_info=sys.exc_info(),
            )

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad leg" in data["exception"]


class TestLedgerContextFilter:
    """Tests for logging context filter."""

    def setup_method(self):
        LedgerContextFilter.clear_context()

    def test_set_and_get_context(self):
        LedgerContextFilter.set_context(user_id="u1", trade_num="T-1")
        context = LedgerContextFilter.get_context()

        assert context == {"user_id": "u1", "trade_num": "T-1"}

    def test_clear_context(self):
        LedgerContextFilter.set_context(user_id="u1")
        LedgerContextFilter.clear_context()

        assert LedgerContextFilter.get_context() == {}

    def test_filter_adds_context_to_record(self):
        LedgerContextFilter.set_context(user_id="u2", trade_num="T-9")
        record = make_record()

        assert LedgerContextFilter().filter(record) is True
        assert record.user_id == "u2"
        assert record.trade_num == "T-9"


class TestLogContext:
    """Tests for LogContext context manager."""

    def setup_method(self):
        LedgerContextFilter.clear_context()

    def test_context_manager_sets_and_clears(self):
        with LogContext(user_id="u1"):
            assert LedgerContextFilter.get_context()["user_id"] == "u1"

        assert "user_id" not in LedgerContextFilter.get_context()

    def test_context_manager_restores_previous(self):
        LedgerContextFilter.set_context(user_id="u1")

        with LogContext(user_id="u2", trade_num="T-1"):
            assert LedgerContextFilter.get_context()["user_id"] == "u2"

        assert LedgerContextFilter.get_context() == {"user_id": "u1"}


class TestLedgerLogger:
    """Tests for LedgerLogger class."""

    def test_logger_creation(self):
        logger = LedgerLogger(name="test_ledger", level="DEBUG", console_output=False).get_logger()

        assert logger.name == "test_ledger"
        assert logger.level == logging.DEBUG

    def test_logger_json_file_includes_context(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = Path(tmpdir) / "logs" / "ledger.log"
            ledger_logger = LedgerLogger(
                name="json_ledger_test",
                log_file=str(log_file),
                json_format=True,
                console_output=False,
            )
            logger = ledger_logger.get_logger()

            with LogContext(user_id="u7"):
                logger.info("Posted")
            for handler in logger.handlers:
                handler.close()

            data = json.loads(log_file.read_text().strip())
            assert data["message"] == "Posted"
            assert data["user_id"] == "u7"


class TestLedgerHelpers:
    """Tests for ledger logging helpers."""

    def setup_method(self):
        self.logger = logging.getLogger("test_ledger_helpers")
        self.logger.setLevel(logging.DEBUG)
        self.handler = logging.handlers.MemoryHandler(capacity=100)
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        self.handler.close()
        self.logger.removeHandler(self.handler)

    def test_log_posting(self):
        log_posting(self.logger, "12", "Trade T-1", 15000, 4, trade_num="T-1")

        record = self.handler.buffer[0]
        assert record.event_type == "posting"
        assert record.journal_id == "12"
        assert record.total_cents == 15000
        assert record.line_count == 4
        assert record.trade_num == "T-1"

    def test_log_disposition(self):
        log_disposition(self.logger, 3, "AAPL", 100.0, -50000, kind="sale")

        record = self.handler.buffer[0]
        assert record.levelno == logging.DEBUG
        assert record.event_type == "disposition"
        assert record.gain_loss_cents == -50000
        assert record.kind == "sale"

    def test_log_wash_sale(self):
        log_wash_sale(self.logger, "AAPL", 5, 8, 50000, stage="detected")

        record = self.handler.buffer[0]
        assert record.levelno == logging.WARNING
        assert record.event_type == "wash_sale"
        assert record.replacement_lot_id == 8
        assert record.disallowed_cents == 50000


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_basic(self):
        logger = setup_logging(level="DEBUG", json_format=False, console_output=False)

        assert logger.name == "tradeledger"
        assert logger.level == logging.DEBUG

    def test_setup_from_settings(self):
        logger = setup_logging_from_settings({"logging": {"level": "WARNING", "file": None}})
        assert logger.level == logging.WARNING
        assert logger.handlers == []

    def test_verbose_overrides_settings(self):
        logger = setup_logging_from_settings(
            {"logging": {"level": "WARNING", "file": None}}, verbose=True
        )

        assert logger.level == logging.DEBUG
        assert [type(h) for h in logger.handlers] == [logging.StreamHandler]

    def test_get_logger(self):
        assert get_logger("posting").name == "tradeledger.posting"
