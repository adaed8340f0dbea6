"""Tests for retry utilities."""

import pytest
from unittest.mock import Mock, patch

from sqlalchemy.orm.exc import StaleDataError

from tradeledger.utils.retry import (
    CONFLICT_EXCEPTIONS,
    RetryConfig,
    calculate_delay,
    run_with_retry,
)


class TestCalculateDelay:
    """Tests for delay calculation."""

    def test_exponential_backoff(self):
        """Test that delay increases exponentially."""
        delays = [
            calculate_delay(attempt, base_delay=0.1, max_delay=60.0, exponential_base=2.0, jitter=False)
            for attempt in range(3)
        ]

        assert delays == pytest.approx([0.1, 0.2, 0.4])

    def test_max_delay_cap(self):
        """Test that delay is capped at max_delay."""
        delay = calculate_delay(10, base_delay=1.0, max_delay=5.0, exponential_base=2.0, jitter=False)
        assert delay == 5.0

    def test_jitter_range(self):
        """Test that jitter keeps delay within 50-150% of base."""
        for _ in range(100):
            delay = calculate_delay(1, base_delay=2.0, max_delay=60.0, exponential_base=2.0, jitter=True)
            assert 2.0 <= delay <= 6.0


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_default_values(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.base_delay == 0.05
        assert config.max_delay == 2.0
        assert config.jitter is True
        assert config.retryable_exceptions == CONFLICT_EXCEPTIONS
        assert config.on_retry is None

    def test_from_settings(self):
        config = RetryConfig.from_settings({"posting": {"max_attempts": 5, "base_delay": 0.2}})

        assert config.max_attempts == 5
        assert config.base_delay == 0.2

    def test_from_empty_settings(self):
        config = RetryConfig.from_settings(None)

        assert config.max_attempts == 3
        assert config.base_delay == 0.05


class TestRunWithRetry:
    """Tests for run_with_retry."""

    def test_success_on_first_attempt(self):
        mock_func = Mock(return_value="posted")

        assert run_with_retry(mock_func, RetryConfig(max_attempts=3)) == "posted"
        assert mock_func.call_count == 1

    def test_retries_version_conflicts_by_default(self):
        """A stale account version is retried until the unit of work succeeds."""
        mock_func = Mock(side_effect=[
            StaleDataError("account version changed"),
            StaleDataError("account version changed"),
            "posted",
        ])

        assert run_with_retry(mock_func, RetryConfig(max_attempts=3, base_delay=0.001)) == "posted"
        assert mock_func.call_count == 3

    def test_raises_after_max_attempts(self):
        mock_func = Mock(side_effect=StaleDataError("persistent conflict"))

        with pytest.raises(StaleDataError, match="persistent conflict"):
            run_with_retry(mock_func, RetryConfig(max_attempts=3, base_delay=0.001))

        assert mock_func.call_count == 3

    def test_ledger_errors_are_not_retried(self):
        """Validation failures are raised on the first attempt."""
        mock_func = Mock(side_effect=ValueError("unbalanced"))

        with pytest.raises(ValueError, match="unbalanced"):
            run_with_retry(mock_func, RetryConfig(max_attempts=3, base_delay=0.001))

        assert mock_func.call_count == 1

    def test_on_retry_callback_called(self):
        callback = Mock()
        mock_func = Mock(side_effect=[StaleDataError("a"), StaleDataError("b"), "posted"])

        run_with_retry(mock_func, RetryConfig(max_attempts=3, base_delay=0.001, on_retry=callback))

        assert callback.call_count == 2
        assert callback.call_args_list[0][0][1] == 1
        assert callback.call_args_list[1][0][1] == 2

    def test_sleeps_between_attempts(self):
        mock_func = Mock(side_effect=[StaleDataError("a"), "posted"])
        config = RetryConfig(max_attempts=2, base_delay=0.5, jitter=False)

        with patch("tradeledger.utils.retry.time.sleep") as sleep:
            run_with_retry(mock_func, config)

        sleep.assert_called_once_with(0.5)

    def test_passes_arguments(self):
        def add(a, b, c=0):
            return a + b + c

        assert run_with_retry(add, RetryConfig(max_attempts=1), 1, 2, c=3) == 6

    def test_uses_config_attempts(self):
        mock_func = Mock(side_effect=StaleDataError("conflict"))
        config = RetryConfig(max_attempts=2, base_delay=0.001)

        with pytest.raises(StaleDataError):
            run_with_retry(mock_func, config)

        assert mock_func.call_count == 2
