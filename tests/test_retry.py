"""Tests for retry with exponential backoff."""

from unittest.mock import Mock

import pytest

from grifo_sync.sync.http_client import GrifoPayloadError, GrifoTransientError
from grifo_sync.sync.retry import RetryConfig, calculate_delay, with_retry


class TestCalculateDelay:
    """Tests for calculate_delay()."""

    def test_exponential_growth(self):
        delays = [calculate_delay(n, initial_delay=0.1, max_delay=10.0) for n in range(4)]
        assert delays == pytest.approx([0.1, 0.2, 0.4, 0.8])

    def test_capped_at_max_delay(self):
        assert calculate_delay(10, initial_delay=0.2, max_delay=5.0) == 5.0

    def test_jitter_stays_within_range(self):
        for _ in range(50):
            delay = calculate_delay(2, initial_delay=1.0, max_delay=10.0, jitter=True)
            assert 3.0 <= delay <= 5.0


class TestWithRetry:
    """Tests for with_retry()."""

    def setup_method(self):
        self.sleeps = []
        self.config = RetryConfig(max_retries=3, initial_delay=0.1, max_delay=5.0, factor=2.0)

    def test_success_first_attempt(self):
        """Test that a successful call runs once without sleeping."""
        operation = Mock(return_value="ok")

        result = with_retry(operation, self.config, sleep=self.sleeps.append)

        assert result == "ok"
        assert operation.call_count == 1
        assert self.sleeps == []

    def test_retries_until_success(self):
        """Test that transient failures are retried."""
        operation = Mock(side_effect=[GrifoTransientError("503"), GrifoTransientError("503"), "ok"])

        result = with_retry(operation, self.config, sleep=self.sleeps.append)

        assert result == "ok"
        assert operation.call_count == 3
        assert self.sleeps == pytest.approx([0.1, 0.2])

    def test_retry_bound_reraises_last_error(self):
        """Test that max_retries=3 means 4 attempts and the last error is raised."""
        errors = [GrifoTransientError(f"failure {i}") for i in range(4)]
        operation = Mock(side_effect=errors)

        with pytest.raises(GrifoTransientError) as exc_info:
            with_retry(operation, self.config, sleep=self.sleeps.append)

        assert exc_info.value is errors[-1]
        assert operation.call_count == 4
        assert self.sleeps == pytest.approx([0.1, 0.2, 0.4])

    def test_non_retryable_error_propagates_immediately(self):
        """Test that permanent errors are not retried."""
        operation = Mock(side_effect=GrifoPayloadError("bad request", status_code=400))

        with pytest.raises(GrifoPayloadError):
            with_retry(operation, self.config, sleep=self.sleeps.append)

        assert operation.call_count == 1
        assert self.sleeps == []

    def test_zero_retries_runs_once(self):
        """Test that max_retries=0 still makes one attempt."""
        operation = Mock(side_effect=GrifoTransientError("down"))

        with pytest.raises(GrifoTransientError):
            with_retry(operation, RetryConfig(max_retries=0), sleep=self.sleeps.append)

        assert operation.call_count == 1

    def test_on_retry_callback(self):
        """Test that on_retry receives the retry number, error and delay."""
        error = GrifoTransientError("timeout")
        operation = Mock(side_effect=[error, "ok"])
        on_retry = Mock()

        with_retry(operation, self.config, on_retry=on_retry, sleep=self.sleeps.append)

        on_retry.assert_called_once_with(1, error, pytest.approx(0.1))

    def test_custom_retryable_exceptions(self):
        """Test retrying on caller-chosen exception types."""
        operation = Mock(side_effect=[KeyError("x"), "ok"])

        result = with_retry(
            operation,
            self.config,
            retryable_exceptions=(KeyError,),
            sleep=self.sleeps.append,
        )

        assert result == "ok"
