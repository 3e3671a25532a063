"""Tests for the bounded retry combinator."""

import pytest

from invoice_ingest.errors import NumberingExhaustedError, RetryExhaustedError
from invoice_ingest.services.retry import retry_bounded


class TestRetryBounded:
    def test_first_result_wins(self):
        calls = []

        def attempt(number):
            calls.append(number)
            return "done" if number == 3 else None

        assert retry_bounded(attempt, max_attempts=5) == "done"
        assert calls == [1, 2, 3]

    def test_exhaustion_raises_configured_error(self):
        with pytest.raises(NumberingExhaustedError) as exc_info:
            retry_bounded(lambda n: None, max_attempts=4, exhausted=NumberingExhaustedError)

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value, RetryExhaustedError)

    def test_real_errors_propagate_immediately(self):
        calls = []

        def attempt(number):
            calls.append(number)
            raise KeyError("broken")

        with pytest.raises(KeyError):
            retry_bounded(attempt, max_attempts=5)
        assert calls == [1]

    def test_jitter_between_attempts_only(self):
        """No sleep after the last attempt."""
        sleeps = []
        with pytest.raises(RetryExhaustedError):
            retry_bounded(
                lambda n: None,
                max_attempts=3,
                jitter_ms=40,
                sleep=sleeps.append,
                jitter=lambda low, high: high,
            )
        assert sleeps == [0.04, 0.04]

    def test_no_jitter_no_sleep(self):
        sleeps = []
        with pytest.raises(RetryExhaustedError):
            retry_bounded(lambda n: None, max_attempts=3, sleep=sleeps.append)
        assert sleeps == []
