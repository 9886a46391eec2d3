"""Tests for the retry and tracing decorators."""

import pytest

from changeflow.common.exceptions import RefreshError, TransientFailure
from changeflow.utils.decorators import retry_with_backoff, traced


class TestRetryWithBackoff:
    def test_retries_until_success_with_growing_delay(self):
        delays = []
        calls = []

        @retry_with_backoff(max_retries=3, initial_delay=1.0, max_delay=3.0,
                            retry_on=(TransientFailure,), sleep=delays.append)
        def load():
            calls.append(1)
            if len(calls) < 4:
                raise TransientFailure("connection reset")
            return "ok"

        assert load() == "ok"
        assert delays == [1.0, 2.0, 3.0]

    def test_exhausted_retries_raise_last_error(self):
        calls = []

        @retry_with_backoff(max_retries=2, initial_delay=0.0, retry_on=(TransientFailure,), sleep=lambda _: None)
        def load():
            calls.append(1)
            raise TransientFailure(f"attempt {len(calls)}")

        with pytest.raises(TransientFailure, match="attempt 3"):
            load()
        assert len(calls) == 3

    def test_terminal_errors_are_not_retried(self):
        calls = []

        @retry_with_backoff(max_retries=5, retry_on=(TransientFailure,), sleep=lambda _: None)
        def load():
            calls.append(1)
            raise RefreshError("bad plan")

        with pytest.raises(RefreshError):
            load()
        assert len(calls) == 1

    def test_retry_condition_narrows_retry_on(self):
        calls = []

        @retry_with_backoff(max_retries=3, retry_condition=lambda exc: "retry" in str(exc), sleep=lambda _: None)
        def load():
            calls.append(1)
            raise ValueError("give up")

        with pytest.raises(ValueError):
            load()
        assert len(calls) == 1


class TestTraced:
    def test_return_value_and_errors_pass_through(self):
        @traced("changeflow.test", attribute_getter=lambda value: {"changeflow.value": value})
        def double(value):
            if value < 0:
                raise ValueError("negative")
            return value * 2

        assert double(2) == 4
        with pytest.raises(ValueError):
            double(-1)

    def test_failing_attribute_getter_does_not_break_the_call(self):
        @traced(attribute_getter=lambda: 1 / 0)
        def answer():
            return 42

        assert answer() == 42
