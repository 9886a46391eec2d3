"""Append-only, per-table change log.

The store keeps one log per change-tracked table. Each log assigns strictly
increasing sequence positions under a short per-table lock and keeps its
records in a segment that is only ever appended to. Compaction replaces the
segment with a trimmed copy instead of mutating it, so readers holding an
older segment keep a consistent view without taking any lock.
"""

import threading
from bisect import bisect_left, bisect_right
from datetime import datetime
from typing import Any, Dict, Hashable, Iterator, List, NamedTuple, Optional, Sequence

from changeflow.common.exceptions import (
    ErrorCode,
    RangeCompactedError,
    UntrackedTableError,
    validation_error,
)
from changeflow.constants import AuditAction, ChangeOperation, CursorMode
from changeflow.logging import get_logger
from changeflow.monitoring.metrics import MetricsCollector
from changeflow.observability.context import sanitize_extras
from changeflow.protocols.hooks import AuditHook
from changeflow.types.changes import AuditEvent, ChangeRecord, RowPredicate
from changeflow.utils.datetime import Clock, get_current_timestamp
from .audit import AuditDispatcher

logger = get_logger(__name__)


class ChangeEntry(NamedTuple):
    """One row change inside a statement passed to ``append_batch``."""

    operation: ChangeOperation
    row_payload: Dict[str, Any]
    is_update: bool = False
    row_identity: Hashable = None


class _Segment(NamedTuple):
    """Retained records of a table; ``records[0]`` has position ``base``."""

    base: int
    records: List[ChangeRecord]


class _TableLog:
    """State of one table's log. All mutation happens under ``lock``."""

    def __init__(self, table_id: str):
        self.table_id = table_id
        self.lock = threading.Lock()
        self.tracked = True
        self.head = 0
        self.segment = _Segment(base=1, records=[])
        self.last_committed_at: Optional[datetime] = None

    def view(self):
        # Head first: any segment read afterwards holds every record <= head.
        head = self.head
        return head, self.segment


class ChangeLogStore:
    """Arena of per-table append-only change logs.

    Operations on different tables never contend. On one table, writers
    serialize only while positions are assigned; readers never block.

    Example:
        >>> store = ChangeLogStore()
        >>> store.enable_tracking("orders")
        >>> store.append("orders", ChangeOperation.INSERT, {"id": 1}, row_identity=1)
        1
        >>> [r.sequence_position for r in store.read_range("orders", 0)]
        [1]
    """

    def __init__(
        self,
        clock: Clock = get_current_timestamp,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize the store.

        Args:
            clock: Source of commit timestamps
            metrics: Optional metrics collector
        """
        self._clock = clock
        self._metrics = metrics
        self._logs: Dict[str, _TableLog] = {}
        self._registry_lock = threading.Lock()
        self._audit = AuditDispatcher()
        self.logger = logger

    # -- Tracking ------------------------------------------------------------

    def enable_tracking(self, table_id: str) -> None:
        """Start recording changes for ``table_id``.

        Re-enabling a table keeps its retained history and positions.
        """
        with self._registry_lock:
            log = self._logs.get(table_id)
            if log is None:
                self._logs[table_id] = _TableLog(table_id)
            else:
                log.tracked = True
        self.logger.info("changelog.tracking_enabled", extra=sanitize_extras({"table_id": table_id}))

    def disable_tracking(self, table_id: str) -> None:
        """Stop recording changes; appends and reads fail until re-enabled."""
        log = self._get_log(table_id)
        log.tracked = False
        self.logger.info("changelog.tracking_disabled", extra=sanitize_extras({"table_id": table_id}))

    def is_tracked(self, table_id: str) -> bool:
        log = self._logs.get(table_id)
        return log is not None and log.tracked

    def tables(self) -> List[str]:
        """Ids of all change-tracked tables."""
        return [table_id for table_id, log in list(self._logs.items()) if log.tracked]

    def add_audit_hook(self, hook: AuditHook) -> None:
        self._audit.register(hook)

    def remove_audit_hook(self, hook: AuditHook) -> None:
        self._audit.unregister(hook)

    def emit_audit(self, event: AuditEvent) -> None:
        """Publish an event from a collaborating component (cursor manager, compaction)."""
        self._audit.emit(event)

    @property
    def clock(self) -> Clock:
        return self._clock

    # -- Writes --------------------------------------------------------------

    def append(
        self,
        table_id: str,
        operation: ChangeOperation,
        row_payload: Dict[str, Any],
        is_update: bool = False,
        row_identity: Hashable = None,
        actor: Optional[str] = None,
    ) -> int:
        """Append one change record.

        Args:
            table_id: Change-tracked table
            operation: INSERT or DELETE
            row_payload: Row image
            is_update: True for either half of an UPDATE pair
            row_identity: Logical row identity; defaults to the assigned
                position for inserts
            actor: Caller identity, forwarded to audit hooks

        Returns:
            The assigned sequence position

        Raises:
            UntrackedTableError: If change tracking is not enabled
        """
        entry = ChangeEntry(ChangeOperation(operation), row_payload, is_update, row_identity)
        return self.append_batch(table_id, [entry], actor=actor)[0]

    def append_update(
        self,
        table_id: str,
        row_identity: Hashable,
        old_payload: Dict[str, Any],
        new_payload: Dict[str, Any],
        actor: Optional[str] = None,
    ) -> List[int]:
        """Append an UPDATE as an adjacent DELETE/INSERT pair.

        Returns:
            Positions of the delete and the insert, in that order
        """
        return self.append_batch(
            table_id,
            [
                ChangeEntry(ChangeOperation.DELETE, old_payload, True, row_identity),
                ChangeEntry(ChangeOperation.INSERT, new_payload, True, row_identity),
            ],
            actor=actor,
        )

    def append_batch(
        self,
        table_id: str,
        entries: Sequence[ChangeEntry],
        actor: Optional[str] = None,
    ) -> List[int]:
        """Append the changes of one statement.

        All records share one commit timestamp and receive consecutive
        positions; no other writer can interleave with them.

        Returns:
            Assigned positions, in entry order

        Raises:
            UntrackedTableError: If change tracking is not enabled
        """
        if not entries:
            return []
        log = self._get_tracked_log(table_id)

        for entry in entries:
            if entry.operation == ChangeOperation.DELETE and entry.row_identity is None:
                raise validation_error(
                    "DELETE records require a row_identity",
                    field="row_identity",
                    details={"table_id": table_id},
                )

        with log.lock:
            if not log.tracked:
                raise UntrackedTableError(table_id)
            committed_at = self._clock()
            # Commit timestamps never go backwards, so time lookups can bisect.
            if log.last_committed_at is not None and committed_at < log.last_committed_at:
                committed_at = log.last_committed_at

            positions: List[int] = []
            position = log.head
            records = log.segment.records
            for entry in entries:
                position += 1
                identity = entry.row_identity if entry.row_identity is not None else position
                records.append(ChangeRecord(
                    table_id=table_id,
                    sequence_position=position,
                    operation=entry.operation,
                    is_update=entry.is_update,
                    row_identity=identity,
                    row_payload=entry.row_payload,
                    committed_at=committed_at,
                ))
                positions.append(position)
            log.head = position
            log.last_committed_at = committed_at

        self.logger.debug(
            "changelog.append",
            extra=sanitize_extras({
                "table_id": table_id,
                "first_position": positions[0],
                "last_position": positions[-1],
                "actor": actor,
            }),
        )
        if self._metrics is not None:
            self._metrics.record_append(table_id, len(positions))
        self._audit.emit(AuditEvent(
            action=AuditAction.APPEND,
            table_id=table_id,
            actor=actor,
            from_position=positions[0],
            to_position=positions[-1],
            record_count=len(positions),
            occurred_at=committed_at,
        ))
        return positions

    # -- Reads ---------------------------------------------------------------

    def head_position(self, table_id: str) -> int:
        """Current maximum written position (0 for an empty log)."""
        return self._get_tracked_log(table_id).head

    def earliest_position(self, table_id: str) -> int:
        """Lowest position still retained (``head + 1`` when nothing is retained)."""
        head, segment = self._get_tracked_log(table_id).view()
        return min(segment.base, head + 1)

    def purged_through(self, table_id: str) -> int:
        """Highest position removed by compaction (0 if none)."""
        return self._get_tracked_log(table_id).segment.base - 1

    def record_count(self, table_id: str) -> int:
        head, segment = self._get_tracked_log(table_id).view()
        return max(0, head - segment.base + 1)

    def get_record(self, table_id: str, position: int) -> Optional[ChangeRecord]:
        """Record at ``position``, or None if not retained or not yet written."""
        head, segment = self._get_tracked_log(table_id).view()
        if position < segment.base or position > head:
            return None
        return segment.records[position - segment.base]

    def position_at(self, table_id: str, timestamp: datetime) -> int:
        """Last position committed at or before ``timestamp``.

        Used to translate time-bounded reads (AT / BEFORE / END at a
        timestamp) into positions. Timestamps earlier than the retained
        history map to the position just before it.
        """
        head, segment = self._get_tracked_log(table_id).view()
        retained = segment.records[: head - segment.base + 1]
        index = bisect_right(retained, timestamp, key=lambda r: r.committed_at)
        return segment.base - 1 + index

    def position_before(self, table_id: str, timestamp: datetime) -> int:
        """Last position committed strictly before ``timestamp``."""
        head, segment = self._get_tracked_log(table_id).view()
        retained = segment.records[: head - segment.base + 1]
        index = bisect_left(retained, timestamp, key=lambda r: r.committed_at)
        return segment.base - 1 + index

    def read_range(
        self,
        table_id: str,
        from_position_exclusive: int = 0,
        to_position_inclusive: Optional[int] = None,
        mode: CursorMode = CursorMode.DEFAULT,
        predicate: Optional[RowPredicate] = None,
    ) -> Iterator[ChangeRecord]:
        """Read records in ``(from_position_exclusive, to_position_inclusive]``.

        The range is validated eagerly; records are then produced lazily in
        increasing position order. Calling again with the same range yields
        the same records unless compaction removed them in between.

        Args:
            table_id: Change-tracked table
            from_position_exclusive: Lower bound (exclusive)
            to_position_inclusive: Upper bound (inclusive); defaults to the
                head at call time
            mode: APPEND_ONLY yields inserts only
            predicate: Optional row filter over ``row_payload``

        Returns:
            Iterator of ChangeRecord

        Raises:
            UntrackedTableError: If change tracking is not enabled
            RangeCompactedError: If the range starts before retained history
        """
        head, segment = self._get_tracked_log(table_id).view()
        end = head if to_position_inclusive is None else to_position_inclusive

        if from_position_exclusive < 0:
            raise validation_error(
                "from_position_exclusive must not be negative",
                field="from_position_exclusive",
                value=from_position_exclusive,
            )
        if end > head:
            raise validation_error(
                f"Position {end} is past the head ({head}) of table '{table_id}'",
                field="to_position_inclusive",
                value=end,
                error_code=ErrorCode.POSITION_OUT_OF_RANGE,
            )
        if from_position_exclusive < segment.base - 1:
            raise RangeCompactedError(table_id, from_position_exclusive, segment.base)

        return self._iter_segment(segment, from_position_exclusive, end, CursorMode(mode), predicate)

    @staticmethod
    def _iter_segment(
        segment: _Segment,
        start_exclusive: int,
        end_inclusive: int,
        mode: CursorMode,
        predicate: Optional[RowPredicate],
    ) -> Iterator[ChangeRecord]:
        for index in range(start_exclusive + 1 - segment.base, end_inclusive + 1 - segment.base):
            record = segment.records[index]
            if mode == CursorMode.APPEND_ONLY and record.operation != ChangeOperation.INSERT:
                continue
            if predicate is not None and not predicate(record.row_payload):
                continue
            yield record

    # -- Compaction support --------------------------------------------------

    def purge_before(self, table_id: str, floor: int) -> int:
        """Remove records with position < ``floor``.

        Only the retention manager calls this. The trimmed segment replaces
        the old one atomically; in-flight readers keep the old segment.

        Returns:
            Number of records removed
        """
        log = self._get_log(table_id)
        with log.lock:
            segment = log.segment
            floor = min(floor, log.head + 1)
            if floor <= segment.base:
                return 0
            removed = floor - segment.base
            log.segment = _Segment(base=floor, records=segment.records[removed:])

        self.logger.debug(
            "changelog.purge",
            extra=sanitize_extras({"table_id": table_id, "floor": floor, "removed": removed}),
        )
        return removed

    # -- Internals -----------------------------------------------------------

    def _get_log(self, table_id: str) -> _TableLog:
        log = self._logs.get(table_id)
        if log is None:
            raise UntrackedTableError(table_id)
        return log

    def _get_tracked_log(self, table_id: str) -> _TableLog:
        log = self._get_log(table_id)
        if not log.tracked:
            raise UntrackedTableError(table_id)
        return log
