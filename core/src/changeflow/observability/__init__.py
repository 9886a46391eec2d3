"""Observability utilities for changeflow."""

from .context import (
    ExecutionRequestContext,
    execution_request_scope,
    merge_telemetry,
    sanitize_extras,
)
from .instrumentation import refresh_instrumentation

__all__ = [
    "ExecutionRequestContext",
    "execution_request_scope",
    "merge_telemetry",
    "sanitize_extras",
    "refresh_instrumentation",
]
