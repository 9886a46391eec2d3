"""Logging infrastructure for changeflow.

This module provides structured logging with JSON output, context tracking
and OpenTelemetry trace correlation.
"""

from changeflow.logging.filters import ContextFilter
from changeflow.logging.logger import CustomJsonFormatter, build_logging_config, get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
    "build_logging_config",
    "CustomJsonFormatter",
    "ContextFilter",
]
