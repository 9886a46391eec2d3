"""Materialization type definitions.

Derived table declarations, target lag, refresh results and consistent
source snapshots.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Hashable, List, Optional

from pydantic import Field, model_validator

from changeflow.constants import InitializeMode, RefreshMode, RefreshOutcome, SpecState
from changeflow.types.base import ChangeFlowModel

# A relation maps each row identity to its column-value payload.
Relation = Dict[Hashable, Dict[str, Any]]


class TargetLag(ChangeFlowModel):
    """Maximum tolerated staleness of a derived table.

    Either a duration, or DOWNSTREAM: refresh only when a dependent derived
    table needs this one to be current.
    """

    duration: Optional[timedelta] = None
    downstream: bool = False

    @model_validator(mode='after')
    def validate_lag(self) -> 'TargetLag':
        if self.downstream and self.duration is not None:
            raise ValueError("A DOWNSTREAM target lag cannot also declare a duration")
        if not self.downstream:
            if self.duration is None:
                raise ValueError("target lag requires a duration or DOWNSTREAM")
            if self.duration < timedelta(0):
                raise ValueError("target lag must not be negative")
        return self

    @classmethod
    def of(cls, duration: timedelta) -> "TargetLag":
        return cls(duration=duration)

    @classmethod
    def of_downstream(cls) -> "TargetLag":
        return cls(downstream=True)

    def __str__(self) -> str:
        from changeflow.utils.datetime import format_duration
        return "DOWNSTREAM" if self.downstream else format_duration(self.duration)


class MaterializationSpec(ChangeFlowModel):
    """Declaration of a derived ("dynamic") table.

    Attributes:
        target_id: Name of the derived table.
        defining_query: Operator tree supplied by the query engine.
        target_lag: Maximum staleness, or DOWNSTREAM.
        refresh_mode: AUTO, FULL or INCREMENTAL.
        initialize: ON_CREATE populates immediately, ON_SCHEDULE waits for
            the first scheduled refresh.
        state: ACTIVE or SUSPENDED.
        last_refreshed_at: Data timestamp of the last successful refresh.
    """

    target_id: str
    defining_query: Any
    target_lag: TargetLag
    refresh_mode: RefreshMode = RefreshMode.AUTO
    initialize: InitializeMode = InitializeMode.ON_CREATE
    state: SpecState = SpecState.ACTIVE
    last_refreshed_at: Optional[datetime] = None

    @property
    def source_ids(self) -> List[str]:
        """Source tables read by the defining query, in first-seen order."""
        return list(self.defining_query.source_ids())


class DependencyEdge(ChangeFlowModel):
    """``target_id`` reads from ``source_id``."""

    source_id: str
    target_id: str


class SourceSnapshot(ChangeFlowModel):
    """Contents of a source as of one change log position."""

    source_id: str
    position: int
    rows: Relation = Field(default_factory=dict)


class RefreshResult(ChangeFlowModel):
    """Outcome of one refresh of a derived table."""

    target_id: str
    strategy: str
    outcome: RefreshOutcome = RefreshOutcome.SUCCEEDED
    rows_inserted: int = 0
    rows_deleted: int = 0
    source_positions: Dict[str, int] = Field(default_factory=dict)
    started_at: datetime
    finished_at: datetime
    error: Optional[Dict[str, Any]] = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
