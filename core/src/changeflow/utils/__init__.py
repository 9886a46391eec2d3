"""Utility helpers for changeflow."""

from changeflow.utils.datetime import (
    Clock,
    elapsed_since,
    ensure_utc,
    format_duration,
    get_current_timestamp,
)
from changeflow.utils.decorators import retry_with_backoff, traced

__all__ = [
    "Clock",
    "elapsed_since",
    "ensure_utc",
    "format_duration",
    "get_current_timestamp",
    "retry_with_backoff",
    "traced",
]
