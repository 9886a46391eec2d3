"""Retention windows and compaction of change logs.

Compaction removes a record only when it is both older than the table's
retention window and below the position of every ACTIVE cursor on the
table. A cursor idle longer than the window plus ``max_extension`` (zero by
default) while its oldest unconsumed record has expired is marked STALE and
stops protecting history.
"""

import threading
from datetime import timedelta
from typing import Dict, List, Optional

from changeflow.changelog.store import ChangeLogStore
from changeflow.common.exceptions import InvalidRetentionError, UntrackedTableError
from changeflow.constants import AuditAction, Edition
from changeflow.cursors.manager import CursorManager
from changeflow.logging import get_logger
from changeflow.monitoring.metrics import MetricsCollector
from changeflow.observability.context import sanitize_extras
from changeflow.settings import RetentionSettings
from changeflow.types.changes import AuditEvent, CompactionResult, RetentionWindow
from changeflow.utils.datetime import ensure_utc, format_duration
from changeflow.utils.decorators import traced

logger = get_logger(__name__)


class RetentionManager:
    """Enforces per-table retention windows over a ChangeLogStore.

    Compaction is driven from outside: call ``compact`` for one table or
    ``sweep`` for all of them, typically every
    ``settings.compaction_interval_seconds``.

    Attributes:
        store: Change log being compacted
        cursors: Cursor manager whose cursors protect history
        settings: Retention settings (edition ceiling, defaults)
    """

    def __init__(
        self,
        store: ChangeLogStore,
        cursors: CursorManager,
        settings: Optional[RetentionSettings] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.cursors = cursors
        self.settings = settings or RetentionSettings()
        self._metrics = metrics
        self._windows: Dict[str, RetentionWindow] = {}
        self._compaction_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self.logger = logger

    def set_retention(self, table_id: str, window_duration: timedelta) -> RetentionWindow:
        """Set the retention window of a change-tracked table.

        Args:
            table_id: Change-tracked table
            window_duration: How long change history stays available

        Returns:
            The stored RetentionWindow

        Raises:
            InvalidRetentionError: If the window is negative or exceeds the
                edition ceiling. Values are never clamped.
            UntrackedTableError: If change tracking is not enabled
        """
        if not self.store.is_tracked(table_id):
            raise UntrackedTableError(table_id)

        ceiling = self.settings.retention_ceiling
        if window_duration < timedelta(0):
            raise InvalidRetentionError(
                f"Retention window for '{table_id}' must not be negative",
                details={"table_id": table_id, "window_duration": str(window_duration)},
            )
        if window_duration > ceiling:
            edition = Edition(self.settings.edition).value
            raise InvalidRetentionError(
                f"Retention window {format_duration(window_duration)} for '{table_id}' exceeds "
                f"the {edition} edition maximum of {format_duration(ceiling)}",
                details={
                    "table_id": table_id,
                    "window_duration": str(window_duration),
                    "ceiling": str(ceiling),
                    "edition": edition,
                },
            )

        window = RetentionWindow(
            table_id=table_id,
            window_duration=window_duration,
            effective_at=self.store.clock(),
        )
        with self._lock:
            self._windows[table_id] = window

        self.logger.info(
            "retention.set",
            extra=sanitize_extras({
                "table_id": table_id,
                "window": format_duration(window_duration),
            }),
        )
        return window

    def get_retention(self, table_id: str) -> RetentionWindow:
        """Retention window of a table, falling back to the configured default."""
        window = self._windows.get(table_id)
        if window is not None:
            return window
        if not self.store.is_tracked(table_id):
            raise UntrackedTableError(table_id)
        return RetentionWindow(
            table_id=table_id,
            window_duration=self.settings.default_retention,
            effective_at=self.store.clock(),
        )

    def clear_retention(self, table_id: str) -> None:
        with self._lock:
            self._windows.pop(table_id, None)

    def stale_after(self, table_id: str) -> timedelta:
        """Idle time after which a cursor on ``table_id`` may be marked STALE."""
        return self.get_retention(table_id).window_duration + self.settings.max_extension

    @traced(
        "changeflow.retention.compact",
        attribute_getter=lambda self, table_id: {"changeflow.table_id": table_id},
    )
    def compact(self, table_id: str) -> CompactionResult:
        """Remove change records no longer protected by retention or cursors.

        Args:
            table_id: Change-tracked table

        Returns:
            CompactionResult describing the floors and what was removed
        """
        lock = self._compaction_lock(table_id)
        with lock:
            now = ensure_utc(self.store.clock())
            window = self.get_retention(table_id).window_duration
            idle_limit = window + self.settings.max_extension

            # First position whose record is not older than the window.
            time_floor = self.store.position_before(table_id, now - window) + 1

            stale: List[str] = []
            for cursor in self.cursors.protecting_cursors(table_id):
                oldest_unconsumed = cursor.position + 1
                idle = now - ensure_utc(cursor.checkpoint_at)
                if oldest_unconsumed < time_floor and idle > idle_limit:
                    if self.cursors.mark_stale(cursor.cursor_id, expected_position=cursor.position):
                        stale.append(cursor.cursor_id)

            # Records at or after the slowest ACTIVE cursor position are kept.
            cursor_floor = self.cursors.min_protected_position(table_id)
            safe_floor = time_floor if cursor_floor is None else min(time_floor, cursor_floor)

            previous_floor = self.store.purged_through(table_id)
            removed = self.store.purge_before(table_id, safe_floor)

        result = CompactionResult(
            table_id=table_id,
            safe_floor=safe_floor,
            time_floor=time_floor,
            cursor_floor=cursor_floor,
            records_removed=removed,
            stale_cursors=stale,
            compacted_at=now,
        )

        if removed or stale:
            self.logger.info(
                "retention.compact",
                extra=sanitize_extras({
                    "table_id": table_id,
                    "safe_floor": safe_floor,
                    "records_removed": removed,
                    "stale_cursors": len(stale),
                }),
            )
        if self._metrics is not None:
            self._metrics.record_compaction(table_id, removed)
        if removed:
            self.store.emit_audit(AuditEvent(
                action=AuditAction.COMPACT,
                table_id=table_id,
                from_position=previous_floor + 1,
                to_position=previous_floor + removed,
                record_count=removed,
                occurred_at=now,
            ))
        return result

    def sweep(self) -> List[CompactionResult]:
        """Compact every change-tracked table."""
        results = []
        for table_id in self.store.tables():
            try:
                results.append(self.compact(table_id))
            except UntrackedTableError:
                # Tracking was disabled between listing and compaction.
                self.logger.debug("retention.sweep.skipped", extra=sanitize_extras({"table_id": table_id}))
        return results

    def _compaction_lock(self, table_id: str) -> threading.Lock:
        with self._lock:
            lock = self._compaction_locks.get(table_id)
            if lock is None:
                lock = self._compaction_locks[table_id] = threading.Lock()
            return lock
