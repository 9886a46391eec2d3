"""Materialization constants and enumerations.

Enumerations used by the incremental materializer and the dependency graph
scheduler to describe derived tables, their refresh strategy and their
lifecycle.
"""

from enum import Enum


class RefreshMode(str, Enum):
    """Requested refresh strategy for a derived table.

    Values:
        AUTO: Incremental when the defining query is delta-composable,
            full recompute otherwise.
        FULL: Always recompute from complete source snapshots.
        INCREMENTAL: Always apply deltas. Rejected for queries that are not
            delta-composable.
    """

    AUTO = "auto"
    FULL = "full"
    INCREMENTAL = "incremental"


class InitializeMode(str, Enum):
    """When a derived table is first populated."""

    ON_CREATE = "on_create"
    ON_SCHEDULE = "on_schedule"


class SpecState(str, Enum):
    """Scheduling state of a derived table."""

    ACTIVE = "active"
    SUSPENDED = "suspended"


class MaterializationStatus(str, Enum):
    """Refresh state machine of a derived table.

    ``UNINITIALIZED -> INITIALIZING -> FRESH -> STALE -> REFRESHING -> FRESH``.
    ``SUSPENDED`` is reachable from any state; resuming restores the state
    held before suspension.
    """

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"
    SUSPENDED = "suspended"


class RefreshOutcome(str, Enum):
    """Result of one refresh attempt as reported by the scheduler."""

    SUCCEEDED = "succeeded"
    NO_DATA = "no_data"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class AggregateFunction(str, Enum):
    """Aggregate functions understood by the materializer.

    COUNT, SUM and AVG are maintained from deltas. MIN and MAX fall back to
    recomputing the affected group when a contributing row is removed.
    """

    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class WindowFunction(str, Enum):
    """Window functions. Plans containing them are recomputed in full."""

    ROW_NUMBER = "row_number"
    RANK = "rank"
    RUNNING_SUM = "running_sum"
