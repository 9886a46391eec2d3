"""Common utilities shared across changeflow modules."""

from changeflow.common.exceptions import (
    ChangeFlowError,
    CursorExpiredError,
    CursorNotFoundError,
    CycleDetectedError,
    ErrorCode,
    InvalidRetentionError,
    MaterializationNotFoundError,
    NotInitializedError,
    RangeCompactedError,
    RefreshCancelledError,
    RefreshError,
    RefreshTimeoutError,
    TransientFailure,
    UnsupportedIncrementalPlanError,
    UntrackedTableError,
    ValidationError,
    classify_failure,
    validation_error,
)

__all__ = [
    "ChangeFlowError",
    "CursorExpiredError",
    "CursorNotFoundError",
    "CycleDetectedError",
    "ErrorCode",
    "InvalidRetentionError",
    "MaterializationNotFoundError",
    "NotInitializedError",
    "RangeCompactedError",
    "RefreshCancelledError",
    "RefreshError",
    "RefreshTimeoutError",
    "TransientFailure",
    "UnsupportedIncrementalPlanError",
    "UntrackedTableError",
    "ValidationError",
    "classify_failure",
    "validation_error",
]
