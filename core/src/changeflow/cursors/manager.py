"""Offset cursor manager.

Cursors are named checkpoints into a table's change log. Peeking reads the
changes after a cursor without moving it; advancing is the only destructive
operation and marks everything up to the new position as processed.
"""

import threading
import uuid
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from changeflow.changelog.netting import collapse_net_changes
from changeflow.changelog.store import ChangeLogStore
from changeflow.common.exceptions import (
    CursorExpiredError,
    CursorNotFoundError,
    ErrorCode,
    RangeCompactedError,
    validation_error,
)
from changeflow.constants import AuditAction, CursorMode, CursorState
from changeflow.logging import get_logger
from changeflow.monitoring.metrics import MetricsCollector
from changeflow.observability.context import sanitize_extras
from changeflow.types.changes import AuditEvent, ChangeRecord, Cursor, NetChange, RowPredicate

logger = get_logger(__name__)


class CursorManager:
    """Manages named consumption checkpoints over a ChangeLogStore.

    Concurrency:
        ``advance`` is serialized per cursor. ``peek`` takes no lock: it reads
        the cursor's position once and then only immutable log records, so it
        can run alongside any number of peeks and advances.

    Example:
        >>> cursors = CursorManager(store)
        >>> cid = cursors.create_cursor("orders")
        >>> store.append("orders", ChangeOperation.INSERT, {"id": 1}, row_identity=1)
        >>> [r.sequence_position for r in cursors.peek(cid)]
        [1]
        >>> cursors.advance(cid)
        1
    """

    def __init__(self, store: ChangeLogStore, metrics: Optional[MetricsCollector] = None):
        """Initialize the cursor manager.

        Args:
            store: Change log the cursors read from
            metrics: Optional metrics collector
        """
        self.store = store
        self._metrics = metrics
        self._cursors: Dict[str, Cursor] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.logger = logger

    # -- Lifecycle -----------------------------------------------------------

    def create_cursor(
        self,
        table_id: str,
        mode: CursorMode = CursorMode.DEFAULT,
        predicate: Optional[RowPredicate] = None,
        cursor_id: Optional[str] = None,
        at_position: Optional[int] = None,
    ) -> str:
        """Create a cursor on ``table_id``.

        Args:
            table_id: Change-tracked table
            mode: DEFAULT or APPEND_ONLY
            predicate: Optional row filter evaluated at read time
            cursor_id: Explicit name; generated when omitted
            at_position: Start at an earlier retained position instead of
                the current head

        Returns:
            The cursor id

        Raises:
            UntrackedTableError: If change tracking is not enabled
            RangeCompactedError: If ``at_position`` precedes retained history
        """
        head = self.store.head_position(table_id)
        position = head
        if at_position is not None:
            if at_position < 0 or at_position > head:
                raise validation_error(
                    f"Cursor position {at_position} is outside [0, {head}] for table '{table_id}'",
                    field="at_position",
                    value=at_position,
                    error_code=ErrorCode.POSITION_OUT_OF_RANGE,
                )
            purged = self.store.purged_through(table_id)
            if at_position < purged:
                raise RangeCompactedError(table_id, at_position, purged + 1)
            position = at_position

        cursor_id = cursor_id or f"{table_id}_{uuid.uuid4().hex[:12]}"
        now = self.store.clock()
        cursor = Cursor(
            cursor_id=cursor_id,
            table_id=table_id,
            mode=CursorMode(mode),
            position=position,
            predicate=predicate,
            created_at=now,
            checkpoint_at=now,
        )

        with self._registry_lock:
            if cursor_id in self._cursors:
                raise validation_error(
                    f"Cursor '{cursor_id}' already exists",
                    field="cursor_id",
                    value=cursor_id,
                    error_code=ErrorCode.CURSOR_EXISTS,
                )
            self._cursors[cursor_id] = cursor
            self._locks[cursor_id] = threading.Lock()

        self.logger.info(
            "cursor.created",
            extra=sanitize_extras({
                "cursor_id": cursor_id,
                "table_id": table_id,
                "mode": cursor.mode,
                "position": position,
            }),
        )
        return cursor_id

    def drop_cursor(self, cursor_id: str) -> None:
        """Remove a cursor. Its history stops being protected from compaction."""
        with self._registry_lock:
            if cursor_id not in self._cursors:
                raise CursorNotFoundError(cursor_id)
            del self._cursors[cursor_id]
            del self._locks[cursor_id]
        self.logger.info("cursor.dropped", extra=sanitize_extras({"cursor_id": cursor_id}))

    def get_cursor(self, cursor_id: str) -> Cursor:
        """Return a copy of the cursor's current state."""
        return self._get(cursor_id).model_copy()

    def has_cursor(self, cursor_id: str) -> bool:
        return cursor_id in self._cursors

    def list_cursors(self, table_id: Optional[str] = None) -> List[Cursor]:
        """Copies of all cursors, optionally restricted to one table."""
        cursors = list(self._cursors.values())
        return [
            c.model_copy() for c in cursors
            if table_id is None or c.table_id == table_id
        ]

    # -- Reads ---------------------------------------------------------------

    def peek(
        self,
        cursor_id: str,
        end_position: Optional[int] = None,
        end_time: Optional[datetime] = None,
    ) -> Iterator[ChangeRecord]:
        """Read the changes after the cursor without moving it.

        Args:
            cursor_id: Cursor to read from
            end_position: Inclusive upper bound; defaults to the head
            end_time: Inclusive upper bound as a commit timestamp; ignored
                when ``end_position`` is given

        Returns:
            Iterator of ChangeRecord in position order

        Raises:
            CursorNotFoundError: If the cursor does not exist
            CursorExpiredError: If the cursor is stale
        """
        cursor = self._get(cursor_id)
        if cursor.is_stale:
            raise CursorExpiredError(cursor_id, cursor.table_id)

        position = cursor.position
        end = self._resolve_end(cursor.table_id, end_position, end_time)
        if end is not None and end < position:
            return iter(())
        try:
            return self.store.read_range(
                cursor.table_id, position, end, cursor.mode, cursor.predicate
            )
        except RangeCompactedError as exc:
            self.mark_stale(cursor_id, expected_position=position)
            raise CursorExpiredError(cursor_id, cursor.table_id, cause=exc)

    def peek_net(
        self,
        cursor_id: str,
        end_position: Optional[int] = None,
        end_time: Optional[datetime] = None,
    ) -> List[NetChange]:
        """Like ``peek`` but folded into one net change per row identity."""
        return collapse_net_changes(self.peek(cursor_id, end_position, end_time))

    def peek_from_another_cursor(
        self,
        source_cursor_id: str,
        target_table_id: Optional[str] = None,
        end_position: Optional[int] = None,
        end_time: Optional[datetime] = None,
        mode: Optional[CursorMode] = None,
        predicate: Optional[RowPredicate] = None,
    ) -> Iterator[ChangeRecord]:
        """Read changes using another cursor's checkpoint as the lower bound.

        Neither the source cursor nor any other cursor is touched, so any
        number of consumers can derive change sets from one checkpoint.

        On the source cursor's own table the position is used directly. On a
        different table, the source checkpoint time is mapped to the last
        position committed at or before it.

        Raises:
            CursorNotFoundError: If the source cursor does not exist
            CursorExpiredError: If the source cursor is stale
        """
        source = self._get(source_cursor_id)
        if source.is_stale:
            raise CursorExpiredError(source_cursor_id, source.table_id)

        table_id = target_table_id or source.table_id
        if table_id == source.table_id:
            lower = source.position
            if mode is None:
                mode = source.mode
            if predicate is None:
                predicate = source.predicate
        else:
            lower = self.store.position_at(table_id, source.checkpoint_at)

        end = self._resolve_end(table_id, end_position, end_time)
        if end is not None and end < lower:
            return iter(())
        return self.store.read_range(table_id, lower, end, mode or CursorMode.DEFAULT, predicate)

    def has_pending_changes(self, cursor_id: str) -> bool:
        """True when a peek would return at least one record."""
        cursor = self._get(cursor_id)
        if cursor.is_stale:
            raise CursorExpiredError(cursor_id, cursor.table_id)
        if self.store.head_position(cursor.table_id) <= cursor.position:
            return False
        return next(iter(self.peek(cursor_id)), None) is not None

    # -- Writes --------------------------------------------------------------

    def advance(
        self,
        cursor_id: str,
        to_position: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> int:
        """Mark changes up to a position as consumed.

        The head is snapshotted at call time; records appended after the
        snapshot stay unconsumed.

        Args:
            cursor_id: Cursor to advance
            to_position: Explicit target in ``[cursor.position, head]``;
                defaults to the head snapshot
            actor: Caller identity, forwarded to audit hooks

        Returns:
            The new position

        Raises:
            CursorNotFoundError: If the cursor does not exist
            CursorExpiredError: If the cursor is stale
        """
        cursor = self._get(cursor_id)
        lock = self._locks.get(cursor_id)
        if lock is None:
            raise CursorNotFoundError(cursor_id)

        with lock:
            if cursor.is_stale:
                raise CursorExpiredError(cursor_id, cursor.table_id)
            head = self.store.head_position(cursor.table_id)
            previous = cursor.position
            target = head if to_position is None else to_position
            if target < previous or target > head:
                raise validation_error(
                    f"Cannot move cursor '{cursor_id}' to {target}: "
                    f"allowed range is [{previous}, {head}]",
                    field="to_position",
                    value=target,
                    error_code=ErrorCode.POSITION_OUT_OF_RANGE,
                )
            now = self.store.clock()
            cursor.position = target
            cursor.checkpoint_at = now

        self.logger.debug(
            "cursor.advance",
            extra=sanitize_extras({
                "cursor_id": cursor_id,
                "table_id": cursor.table_id,
                "from_position": previous,
                "to_position": target,
                "actor": actor,
            }),
        )
        if self._metrics is not None:
            self._metrics.record_advance(cursor.table_id)
        self.store.emit_audit(AuditEvent(
            action=AuditAction.ADVANCE,
            table_id=cursor.table_id,
            cursor_id=cursor_id,
            actor=actor,
            from_position=previous,
            to_position=target,
            record_count=target - previous,
            occurred_at=now,
        ))
        return target

    def rebaseline(self, cursor_id: str) -> int:
        """Reset a cursor to the current head and mark it ACTIVE.

        Unconsumed history is given up; this is the recovery path for a
        STALE cursor.

        Returns:
            The new position
        """
        cursor = self._get(cursor_id)
        with self._locks[cursor_id]:
            head = self.store.head_position(cursor.table_id)
            cursor.position = max(cursor.position, head)
            cursor.checkpoint_at = self.store.clock()
            cursor.state = CursorState.ACTIVE
        self.logger.warning(
            "cursor.rebaselined",
            extra=sanitize_extras({"cursor_id": cursor_id, "position": cursor.position}),
        )
        return cursor.position

    def mark_stale(self, cursor_id: str, expected_position: Optional[int] = None) -> bool:
        """Mark a cursor STALE.

        With ``expected_position``, the cursor is only marked when it has
        not advanced since the caller looked at it.

        Returns:
            True if the cursor is now stale because of this call
        """
        cursor = self._cursors.get(cursor_id)
        lock = self._locks.get(cursor_id)
        if cursor is None or lock is None:
            return False
        with lock:
            if cursor.is_stale:
                return False
            if expected_position is not None and cursor.position != expected_position:
                return False
            cursor.state = CursorState.STALE

        self.logger.warning(
            "cursor.stale",
            extra=sanitize_extras({
                "cursor_id": cursor_id,
                "table_id": cursor.table_id,
                "position": cursor.position,
            }),
        )
        return True

    # -- Compaction support --------------------------------------------------

    def protecting_cursors(self, table_id: str) -> List[Cursor]:
        """ACTIVE cursors on ``table_id``; their unconsumed history is kept."""
        return [
            c for c in list(self._cursors.values())
            if c.table_id == table_id and not c.is_stale
        ]

    def min_protected_position(self, table_id: str) -> Optional[int]:
        positions = [c.position for c in self.protecting_cursors(table_id)]
        return min(positions) if positions else None

    # -- Internals -----------------------------------------------------------

    def _get(self, cursor_id: str) -> Cursor:
        cursor = self._cursors.get(cursor_id)
        if cursor is None:
            raise CursorNotFoundError(cursor_id)
        return cursor

    def _resolve_end(
        self,
        table_id: str,
        end_position: Optional[int],
        end_time: Optional[datetime],
    ) -> Optional[int]:
        if end_position is not None:
            return end_position
        if end_time is not None:
            return self.store.position_at(table_id, end_time)
        return None
