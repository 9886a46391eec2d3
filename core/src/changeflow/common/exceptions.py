from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Standard error codes for changeflow operations.

    Each category has a specific prefix for easy identification. Callers
    that translate errors for end users (DDL front-ends, APIs) switch on
    these codes rather than on exception classes.

    Attributes:
        CONFIG_*: Configuration-related errors
        VALIDATION_*: Input validation errors
        CHANGELOG_*: Change log store errors
        CURSOR_*: Cursor errors
        MATERIALIZATION_*: Derived table errors
        GRAPH_*: Dependency graph errors
        EXECUTION_*: Refresh execution errors
        RETRY_*: Transient/retryable errors
    """
    # Configuration errors
    CONFIG_ERROR = "CONFIG_001"
    INVALID_RETENTION = "CONFIG_002"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_001"
    INVALID_ARGUMENT = "VALIDATION_002"

    # Change log errors
    UNTRACKED_TABLE = "CHANGELOG_001"
    RANGE_COMPACTED = "CHANGELOG_002"
    POSITION_OUT_OF_RANGE = "CHANGELOG_003"

    # Cursor errors
    CURSOR_NOT_FOUND = "CURSOR_001"
    CURSOR_EXPIRED = "CURSOR_002"
    CURSOR_EXISTS = "CURSOR_003"

    # Materialization errors
    MATERIALIZATION_NOT_FOUND = "MATERIALIZATION_001"
    MATERIALIZATION_EXISTS = "MATERIALIZATION_002"
    NOT_INITIALIZED = "MATERIALIZATION_003"
    UNSUPPORTED_INCREMENTAL_PLAN = "MATERIALIZATION_004"

    # Dependency graph errors
    CYCLE_DETECTED = "GRAPH_001"

    # Execution errors
    EXECUTION_ERROR = "EXECUTION_001"
    REFRESH_CANCELLED = "EXECUTION_002"
    REFRESH_TIMEOUT = "EXECUTION_003"

    # Retry/Transient errors
    RETRYABLE_ERROR = "RETRY_001"


class ChangeFlowError(Exception):
    """Base exception for all changeflow errors.

    Errors are categorized by ``error_code``. The named subclasses below fix
    the code for each documented failure kind so callers can catch them
    individually, while front-ends can still switch on the code alone.

    Attributes:
        message: Error message
        error_code: Error code from ErrorCode enum
        details: Additional error details
        cause: Optional underlying exception
        is_retryable: Whether the error is transient and can be retried
    """

    default_code: ErrorCode = ErrorCode.EXECUTION_ERROR
    user_hint: Optional[str] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        is_retryable: bool = False
    ):
        """Initialize changeflow error.

        Args:
            message: Error message
            error_code: Error code from ErrorCode enum (defaults to the
                class's ``default_code``)
            details: Additional error details
            cause: Optional underlying exception
            is_retryable: Whether error is transient
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        self.cause = cause
        self.is_retryable = is_retryable

        # Lazy import to avoid circular dependency
        from changeflow.logging import get_logger
        from changeflow.observability.context import sanitize_extras
        get_logger(__name__).debug(
            "error.raised",
            extra=sanitize_extras({
                "error_type": type(self).__name__,
                "error_code": self.error_code.value,
                "error_message": message,
                "is_retryable": is_retryable,
            }),
        )

    def __str__(self) -> str:
        """String representation of the error."""
        msg = f"[{self.error_code.value}] {self.message}"
        if self.cause:
            msg = f"{msg} (caused by: {type(self.cause).__name__}: {str(self.cause)})"
        return msg

    @property
    def user_message(self) -> str:
        """Message suitable for surfacing to end users."""
        if self.user_hint:
            return f"{self.message}. {self.user_hint}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "user_message": self.user_message,
            "error_code": self.error_code.value,
            "error_name": self.error_code.name,
            "details": self.details,
            "is_retryable": self.is_retryable
        }


class ValidationError(ChangeFlowError):
    """Invalid argument passed to a changeflow operation."""
    default_code = ErrorCode.VALIDATION_ERROR


class UntrackedTableError(ChangeFlowError):
    """Append or read against a table without change tracking."""
    default_code = ErrorCode.UNTRACKED_TABLE
    user_hint = "Enable change tracking on the table first"

    def __init__(self, table_id: str, **kwargs):
        super().__init__(
            f"Change tracking is not enabled for table '{table_id}'",
            details={"table_id": table_id},
            **kwargs
        )


class RangeCompactedError(ChangeFlowError):
    """Requested range starts before the retained history."""
    default_code = ErrorCode.RANGE_COMPACTED
    user_hint = "The requested changes are no longer retained; re-baseline from the current state"

    def __init__(self, table_id: str, from_position: int, earliest_position: int, **kwargs):
        super().__init__(
            f"Changes after position {from_position} of table '{table_id}' have been "
            f"compacted (earliest retained position is {earliest_position})",
            details={
                "table_id": table_id,
                "from_position": from_position,
                "earliest_position": earliest_position,
            },
            **kwargs
        )


class CursorNotFoundError(ChangeFlowError):
    """Cursor id is unknown."""
    default_code = ErrorCode.CURSOR_NOT_FOUND

    def __init__(self, cursor_id: str, **kwargs):
        super().__init__(
            f"Cursor '{cursor_id}' does not exist",
            details={"cursor_id": cursor_id},
            **kwargs
        )


class CursorExpiredError(ChangeFlowError):
    """Cursor fell behind the compaction floor."""
    default_code = ErrorCode.CURSOR_EXPIRED
    user_hint = "Recreate the cursor to resume from the current head"

    def __init__(self, cursor_id: str, table_id: str, **kwargs):
        super().__init__(
            f"Cursor '{cursor_id}' on table '{table_id}' is stale",
            details={"cursor_id": cursor_id, "table_id": table_id},
            **kwargs
        )


class InvalidRetentionError(ChangeFlowError):
    """Retention window outside the allowed range."""
    default_code = ErrorCode.INVALID_RETENTION


class MaterializationNotFoundError(ChangeFlowError):
    """Derived table id is unknown."""
    default_code = ErrorCode.MATERIALIZATION_NOT_FOUND

    def __init__(self, target_id: str, **kwargs):
        super().__init__(
            f"Dynamic table '{target_id}' does not exist",
            details={"target_id": target_id},
            **kwargs
        )


class NotInitializedError(ChangeFlowError):
    """Query against a derived table that has never been populated."""
    default_code = ErrorCode.NOT_INITIALIZED
    user_hint = "Run a manual refresh to populate it"

    def __init__(self, target_id: str, **kwargs):
        super().__init__(
            f"Dynamic table '{target_id}' has not been initialized",
            details={"target_id": target_id},
            **kwargs
        )


class CycleDetectedError(ChangeFlowError):
    """Adding a derived table would create a dependency cycle."""
    default_code = ErrorCode.CYCLE_DETECTED

    def __init__(self, target_id: str, source_id: str, **kwargs):
        super().__init__(
            f"Dynamic table '{target_id}' cannot read from '{source_id}': "
            f"'{source_id}' already depends on '{target_id}'",
            details={"target_id": target_id, "source_id": source_id},
            **kwargs
        )


class UnsupportedIncrementalPlanError(ChangeFlowError):
    """INCREMENTAL refresh forced on a query that is not delta-composable."""
    default_code = ErrorCode.UNSUPPORTED_INCREMENTAL_PLAN
    user_hint = "Use refresh mode AUTO or FULL"

    def __init__(self, target_id: str, reasons: list, **kwargs):
        super().__init__(
            f"Dynamic table '{target_id}' cannot be refreshed incrementally: "
            + "; ".join(reasons),
            details={"target_id": target_id, "reasons": list(reasons)},
            **kwargs
        )


class RefreshError(ChangeFlowError):
    """Terminal failure while refreshing a derived table."""
    default_code = ErrorCode.EXECUTION_ERROR


class RefreshCancelledError(ChangeFlowError):
    """Refresh aborted through its cancellation token."""
    default_code = ErrorCode.REFRESH_CANCELLED


class RefreshTimeoutError(RefreshCancelledError):
    """Refresh exceeded its time budget and was cancelled."""
    default_code = ErrorCode.REFRESH_TIMEOUT


class TransientFailure(ChangeFlowError):
    """Retryable failure of an external collaborator."""
    default_code = ErrorCode.RETRYABLE_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("is_retryable", True)
        super().__init__(message, **kwargs)


# Helper functions for common error scenarios
def validation_error(
    message: str,
    field: Optional[str] = None,
    value: Any = None,
    **kwargs
) -> ValidationError:
    """Create a validation error.

    Args:
        message: Error message
        field: Field that failed validation
        value: Invalid value
        **kwargs: Additional error details

    Returns:
        ValidationError with VALIDATION_ERROR code
    """
    details = kwargs.pop('details', {})
    if field:
        details["field"] = field
    if value is not None:
        details["value"] = str(value)

    return ValidationError(message=message, details=details, **kwargs)


def classify_failure(exc: Exception, operation: str) -> ChangeFlowError:
    """Wrap an arbitrary exception so it never crosses a boundary unclassified.

    ``OSError``, ``ConnectionError`` and ``TimeoutError`` raised by external
    collaborators are transient; everything else is terminal.

    Args:
        exc: The exception to classify
        operation: Operation during which it was raised

    Returns:
        The exception itself if already a ChangeFlowError, otherwise a
        TransientFailure or RefreshError wrapping it
    """
    if isinstance(exc, ChangeFlowError):
        return exc
    details = {"operation": operation}
    if isinstance(exc, (OSError, ConnectionError, TimeoutError)):
        return TransientFailure(
            f"Transient failure during {operation}: {exc}",
            details=details,
            cause=exc,
        )
    return RefreshError(
        f"{operation} failed: {exc}",
        details=details,
        cause=exc,
    )
