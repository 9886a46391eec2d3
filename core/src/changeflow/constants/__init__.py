"""Constants module for changeflow.

This module contains all constant values and enumerations used throughout
changeflow. It has no dependencies on other changeflow modules.

Organization:
    - changes: Change log, cursor and retention constants
    - materialization: Derived table and refresh constants
"""

from changeflow.constants.changes import (
    AuditAction,
    ChangeOperation,
    CursorMode,
    CursorState,
    Edition,
    RETENTION_CEILING_DAYS,
)
from changeflow.constants.materialization import (
    AggregateFunction,
    InitializeMode,
    MaterializationStatus,
    RefreshMode,
    RefreshOutcome,
    SpecState,
    WindowFunction,
)

__all__ = [
    # Changes
    "AuditAction",
    "ChangeOperation",
    "CursorMode",
    "CursorState",
    "Edition",
    "RETENTION_CEILING_DAYS",
    # Materialization
    "AggregateFunction",
    "InitializeMode",
    "MaterializationStatus",
    "RefreshMode",
    "RefreshOutcome",
    "SpecState",
    "WindowFunction",
]
