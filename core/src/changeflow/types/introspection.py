"""Tabular introspection rows, equivalent to SHOW STREAMS / SHOW DYNAMIC TABLES."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from changeflow.constants import (
    CursorMode,
    CursorState,
    MaterializationStatus,
    RefreshMode,
    SpecState,
)
from changeflow.types.base import ChangeFlowModel


class StreamInfo(ChangeFlowModel):
    """One row of ``show_streams()``."""

    cursor_id: str
    table_id: str
    mode: CursorMode
    position: int
    head_position: int
    state: CursorState
    created_at: datetime
    stale_after: Optional[datetime] = None


class DynamicTableInfo(ChangeFlowModel):
    """One row of ``show_dynamic_tables()``."""

    target_id: str
    state: SpecState
    status: MaterializationStatus
    target_lag: str
    refresh_mode: RefreshMode
    effective_strategy: str
    last_refreshed_at: Optional[datetime] = None
    sources: List[str] = Field(default_factory=list)
    row_count: int = 0
