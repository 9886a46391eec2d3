"""Structured logging for changeflow.

Every component logs event-style messages (``changelog.append``,
``cursor.advance``, ``refresh.complete``) with flat ``extra`` fields. The
JSON formatter below turns those into one object per line, tagged with the
emitting component and, when a span is active, the OpenTelemetry ids that
correlate a refresh's log lines with its trace.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Set

from opentelemetry import trace

ROOT_LOGGER = "changeflow"


def _build_reserved_keys() -> Set[str]:
    """Collect standard ``LogRecord`` attributes to avoid duplicating them."""
    probe = logging.LogRecord(
        name=f"{ROOT_LOGGER}.probe",
        level=logging.INFO,
        pathname=__file__,
        lineno=0,
        msg="",
        args=(),
        exc_info=None,
    )
    reserved = set(probe.__dict__.keys())
    reserved.update({"asctime", "message"})
    return reserved


_RESERVED_LOG_RECORD_KEYS = _build_reserved_keys()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def component_of(logger_name: str) -> Optional[str]:
    """``changeflow.cursors.manager`` -> ``cursors``; None outside the package."""
    parts = logger_name.split(".")
    if len(parts) < 2 or parts[0] != ROOT_LOGGER:
        return None
    return parts[1]


class CustomJsonFormatter(logging.Formatter):
    """One JSON object per record: event, level, component, extras and trace ids."""

    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        component = component_of(record.name)
        if component is not None:
            log_record["component"] = component

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_RECORD_KEYS and key not in log_record:
                log_record[key] = value

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            log_record["trace_id"] = format(span_context.trace_id, "032x")
            log_record["span_id"] = format(span_context.span_id, "016x")

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


def build_logging_config(
    level: str = "INFO",
    component_levels: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """``dictConfig`` dictionary for changeflow's JSON console logging.

    Args:
        level: Level of the ``changeflow`` logger
        component_levels: Per-component overrides, e.g. ``{"changelog": "WARNING"}``
            to quiet per-append events on busy tables
    """
    loggers: Dict[str, Any] = {
        ROOT_LOGGER: {"level": level.upper(), "handlers": ["console"], "propagate": False},
    }
    for component, component_level in (component_levels or {}).items():
        loggers[f"{ROOT_LOGGER}.{component}"] = {"level": component_level.upper()}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "changeflow_json": {
                "()": "changeflow.logging.logger.CustomJsonFormatter",
            }
        },
        "filters": {
            "changeflow_context": {
                "()": "changeflow.logging.filters.ContextFilter",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "changeflow_json",
                "filters": ["changeflow_context"],
                "stream": "ext://sys.stdout",
            }
        },
        "loggers": loggers,
    }


def setup_logging(
    level: Optional[str] = None,
    component_levels: Optional[Mapping[str, str]] = None,
) -> None:
    """Configure structured logging for the ``changeflow`` logger tree.

    Args:
        level: Base level; defaults to ``settings.log_level``
        component_levels: Per-component level overrides
    """
    if level is None:
        from changeflow.settings import get_settings
        level = get_settings().log_level
    logging.config.dictConfig(build_logging_config(level, component_levels))
