"""Tests for error classification and serialization."""

import pytest

from changeflow.common.exceptions import (
    ChangeFlowError,
    CursorExpiredError,
    CycleDetectedError,
    ErrorCode,
    RangeCompactedError,
    RefreshCancelledError,
    RefreshError,
    RefreshTimeoutError,
    TransientFailure,
    ValidationError,
    classify_failure,
    validation_error,
)


class TestChangeFlowError:
    def test_default_code_comes_from_subclass(self):
        assert CursorExpiredError("s1", "orders").error_code == ErrorCode.CURSOR_EXPIRED
        assert RefreshTimeoutError("slow").error_code == ErrorCode.REFRESH_TIMEOUT
        assert ChangeFlowError("boom").error_code == ErrorCode.EXECUTION_ERROR

    def test_timeout_is_a_cancellation(self):
        with pytest.raises(RefreshCancelledError):
            raise RefreshTimeoutError("slow")

    def test_str_includes_code_and_cause(self):
        err = RefreshError("refresh failed", cause=KeyError("amount"))
        assert str(err) == "[EXECUTION_001] refresh failed (caused by: KeyError: 'amount')"

    def test_to_dict(self):
        err = RangeCompactedError("orders", from_position=3, earliest_position=7)
        data = err.to_dict()

        assert data["type"] == "RangeCompactedError"
        assert data["error_code"] == "CHANGELOG_002"
        assert data["error_name"] == "RANGE_COMPACTED"
        assert data["details"] == {"table_id": "orders", "from_position": 3, "earliest_position": 7}
        assert data["is_retryable"] is False
        assert data["user_message"].endswith("re-baseline from the current state")

    def test_user_message_without_hint_is_the_message(self):
        err = CycleDetectedError("a", "b")
        assert err.user_message == err.message
        assert err.details == {"target_id": "a", "source_id": "b"}


class TestHelpers:
    def test_validation_error_records_field_and_value(self):
        err = validation_error("bad lag", field="target_lag", value=5)
        assert isinstance(err, ValidationError)
        assert err.details == {"field": "target_lag", "value": "5"}

    def test_validation_error_accepts_code_override(self):
        err = validation_error("taken", field="target_id", error_code=ErrorCode.MATERIALIZATION_EXISTS)
        assert err.error_code == ErrorCode.MATERIALIZATION_EXISTS

    @pytest.mark.parametrize("exc", [ConnectionError("reset"), TimeoutError("slow"), OSError("disk")])
    def test_io_failures_are_transient(self, exc):
        classified = classify_failure(exc, "snapshot of 'orders'")
        assert isinstance(classified, TransientFailure)
        assert classified.is_retryable
        assert classified.cause is exc

    def test_other_failures_are_terminal(self):
        classified = classify_failure(ValueError("bad row"), "refresh of 'm'")
        assert type(classified) is RefreshError
        assert not classified.is_retryable
        assert classified.details == {"operation": "refresh of 'm'"}

    def test_changeflow_errors_pass_through(self):
        err = CursorExpiredError("s1", "orders")
        assert classify_failure(err, "peek") is err
