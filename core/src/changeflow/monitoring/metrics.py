"""Metrics collection for change tracking and refresh operations.

This module provides classes for collecting and exporting metrics related
to change log appends, cursor consumption, compaction and derived table
refreshes.
"""

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional, TYPE_CHECKING

from opentelemetry.metrics import CallbackOptions, Observation

from changeflow.logging import get_logger
from changeflow.observability.context import sanitize_extras
from changeflow.telemetry import get_meter
from changeflow.utils.datetime import get_current_timestamp
from changeflow.__version__ import __version__

if TYPE_CHECKING:
    from changeflow.settings.main import _Settings as SettingsType
else:
    SettingsType = Any


@dataclass
class RefreshMetrics:
    """Container for one refresh of a derived table.

    Attributes:
        target_id: Derived table that was refreshed
        strategy: Strategy used (full or incremental)
        outcome: Refresh outcome (succeeded, failed, ...)
        rows_inserted: Rows added to the result
        rows_deleted: Rows removed from the result
        duration_seconds: Refresh duration in seconds
        error_message: Error message if the refresh failed
        timestamp: When the refresh finished
    """

    target_id: str
    strategy: str
    outcome: str
    rows_inserted: int = 0
    rows_deleted: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=get_current_timestamp)

    @property
    def success(self) -> bool:
        return self.outcome in ("succeeded", "no_data")

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary."""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


class MetricsCollector:
    """Collector for change tracking and refresh metrics.

    This class keeps a bounded in-memory history of refreshes and exports
    counters and histograms through OpenTelemetry.

    Attributes:
        settings: Application settings (optional)
        logger: Logger instance
        meter: OpenTelemetry meter
    """

    def __init__(self, settings: Optional[SettingsType] = None, history_size: int = 1000):
        """Initialize metrics collector.

        Args:
            settings: Application settings
            history_size: Number of refresh records kept for summaries
        """
        self.settings = settings
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        self._refreshes: Deque[RefreshMetrics] = deque(maxlen=history_size)

        service_name = getattr(settings, "service_name", None) or "changeflow"
        self.meter = get_meter(service_name, __version__)
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        """Setup OpenTelemetry instruments."""
        # Counters
        self.append_counter = self.meter.create_counter(
            "changeflow_changes_appended_total",
            description="Total number of change records appended",
            unit="records"
        )

        self.advance_counter = self.meter.create_counter(
            "changeflow_cursor_advances_total",
            description="Total number of cursor advances",
            unit="advances"
        )

        self.compacted_counter = self.meter.create_counter(
            "changeflow_records_compacted_total",
            description="Total number of change records removed by compaction",
            unit="records"
        )

        self.refresh_counter = self.meter.create_counter(
            "changeflow_refreshes_total",
            description="Total number of derived table refreshes",
            unit="refreshes"
        )

        self.error_counter = self.meter.create_counter(
            "changeflow_refresh_errors_total",
            description="Total number of failed refreshes",
            unit="errors"
        )

        # Histograms
        self.duration_histogram = self.meter.create_histogram(
            "changeflow_refresh_duration_seconds",
            description="Duration of derived table refreshes",
            unit="seconds"
        )

        self.rows_histogram = self.meter.create_histogram(
            "changeflow_rows_per_refresh",
            description="Result rows changed per refresh",
            unit="rows"
        )

        # Gauges (via callbacks)
        self.meter.create_observable_gauge(
            "changeflow_refresh_success_rate",
            callbacks=[self._success_rate_callback],
            description="Refresh success rate over the last hour",
            unit="ratio"
        )

    def record_append(self, table_id: str, count: int = 1) -> None:
        self.append_counter.add(count, {"table": table_id})

    def record_advance(self, table_id: str) -> None:
        self.advance_counter.add(1, {"table": table_id})

    def record_compaction(self, table_id: str, removed: int) -> None:
        if removed:
            self.compacted_counter.add(removed, {"table": table_id})

    def record_refresh(self, metrics: RefreshMetrics) -> None:
        """Record a refresh.

        Args:
            metrics: Refresh metrics to record
        """
        with self._lock:
            self._refreshes.append(metrics)

        attributes = {
            "target": metrics.target_id,
            "strategy": metrics.strategy,
            "outcome": metrics.outcome,
        }

        self.refresh_counter.add(1, attributes)
        if not metrics.success:
            self.error_counter.add(1, attributes)

        self.duration_histogram.record(metrics.duration_seconds, attributes)
        self.rows_histogram.record(metrics.rows_inserted + metrics.rows_deleted, attributes)

        self.logger.debug(
            "refresh.recorded",
            extra=sanitize_extras(metrics.to_dict(), prefix="refresh."),
        )

    def _success_rate_callback(self, options: CallbackOptions) -> Iterable[Observation]:
        """Callback for success rate gauge."""
        yield Observation(self.get_summary(timedelta(hours=1))["success_rate"])

    def get_summary(self, time_window: timedelta = timedelta(hours=1)) -> Dict[str, Any]:
        """Get summary of refreshes for a time window.

        Args:
            time_window: Time window to summarize

        Returns:
            Dictionary with refresh summary
        """
        cutoff = get_current_timestamp() - time_window
        with self._lock:
            recent: List[RefreshMetrics] = [m for m in self._refreshes if m.timestamp > cutoff]

        if not recent:
            return {
                "total_refreshes": 0,
                "successful_refreshes": 0,
                "failed_refreshes": 0,
                "success_rate": 1.0,
                "average_duration_seconds": 0.0,
                "refreshes_by_strategy": {},
            }

        successful = [m for m in recent if m.success]
        by_strategy: Dict[str, int] = {}
        for metric in recent:
            by_strategy[metric.strategy] = by_strategy.get(metric.strategy, 0) + 1

        return {
            "total_refreshes": len(recent),
            "successful_refreshes": len(successful),
            "failed_refreshes": len(recent) - len(successful),
            "success_rate": len(successful) / len(recent),
            "average_duration_seconds": sum(m.duration_seconds for m in recent) / len(recent),
            "refreshes_by_strategy": by_strategy,
        }
