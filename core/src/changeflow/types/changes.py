"""Change tracking type definitions.

This module contains the records stored by the change log, the cursor
checkpoints that consume them and the retention configuration that bounds
them.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Mapping, Optional

from pydantic import ConfigDict, Field, field_validator

from changeflow.constants import AuditAction, ChangeOperation, CursorMode, CursorState
from changeflow.types.base import ChangeFlowModel

RowPredicate = Callable[[Mapping[str, Any]], bool]


class ChangeRecord(ChangeFlowModel):
    """One row-level delta in a table's change log.

    Records are immutable once written. An UPDATE is represented by a
    DELETE of the old image at position ``n`` and an INSERT of the new image
    at position ``n + 1``, both with ``is_update=True`` and the same
    ``row_identity``.

    Attributes:
        table_id: Table the change belongs to.
        sequence_position: Monotonic position, unique per table, starting at 1.
        operation: INSERT or DELETE.
        is_update: True for either half of an UPDATE pair.
        row_identity: Stable identity of the logical row.
        row_payload: Column-value mapping of the row image.
        committed_at: Commit timestamp of the statement that wrote it.
    """
    model_config = ConfigDict(frozen=True)

    table_id: str
    sequence_position: int = Field(..., ge=1)
    operation: ChangeOperation
    is_update: bool = False
    row_identity: Hashable = None
    row_payload: Dict[str, Any] = Field(default_factory=dict)
    committed_at: datetime

    @property
    def is_insert(self) -> bool:
        return self.operation == ChangeOperation.INSERT

    @property
    def is_delete(self) -> bool:
        return self.operation == ChangeOperation.DELETE


class NetChange(ChangeFlowModel):
    """Net effect of a range of changes on one logical row.

    ``before`` is the row image at the start of the range (None if the row
    did not exist), ``after`` the image at the end (None if it no longer
    exists).
    """
    model_config = ConfigDict(frozen=True)

    row_identity: Hashable
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @property
    def is_update(self) -> bool:
        return self.before is not None and self.after is not None


class Cursor(ChangeFlowModel):
    """A named, forward-only consumption point in a table's change log.

    Attributes:
        cursor_id: Unique cursor name.
        table_id: Table whose log the cursor reads.
        mode: DEFAULT (all operations) or APPEND_ONLY (inserts only).
        position: Last acknowledged sequence position.
        predicate: Optional row filter evaluated at read time.
        state: ACTIVE or STALE.
        created_at: When the cursor was created.
        checkpoint_at: When ``position`` was last set (creation, advance or
            re-baseline). Peeks never change it.
    """

    cursor_id: str
    table_id: str
    mode: CursorMode = CursorMode.DEFAULT
    position: int = Field(default=0, ge=0)
    predicate: Optional[RowPredicate] = Field(default=None, exclude=True)
    state: CursorState = CursorState.ACTIVE
    created_at: datetime
    checkpoint_at: datetime

    @property
    def is_stale(self) -> bool:
        return self.state == CursorState.STALE


class RetentionWindow(ChangeFlowModel):
    """Retention configuration for one table."""

    table_id: str
    window_duration: timedelta
    effective_at: datetime

    @field_validator("window_duration")
    @classmethod
    def validate_window(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("window_duration must not be negative")
        return v


class CompactionResult(ChangeFlowModel):
    """Outcome of one compaction pass over a table."""

    table_id: str
    safe_floor: int
    time_floor: int
    cursor_floor: Optional[int] = None
    records_removed: int = 0
    stale_cursors: list = Field(default_factory=list)
    compacted_at: datetime


class AuditEvent(ChangeFlowModel):
    """Event emitted to audit hooks for appends, advances and compactions.

    ``actor`` is the identity passed in by the caller; the core does not
    verify it.
    """
    model_config = ConfigDict(frozen=True)

    action: AuditAction
    table_id: str
    actor: Optional[str] = None
    cursor_id: Optional[str] = None
    from_position: Optional[int] = None
    to_position: Optional[int] = None
    record_count: int = 0
    occurred_at: datetime
