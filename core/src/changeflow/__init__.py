from changeflow.__version__ import __version__

from changeflow.api import ChangeFlowEngine
from changeflow.changelog import ChangeEntry, ChangeLogStore, InMemoryAuditTrail, collapse_net_changes
from changeflow.cursors import CursorManager
from changeflow.retention import RetentionManager
from changeflow.tables import TableStore
from changeflow.materialization import (
    Aggregate,
    AggregateCall,
    CancellationToken,
    Filter,
    IncrementalMaterializer,
    Join,
    Project,
    Scan,
    Window,
    avg,
    classify,
    count,
    max_,
    min_,
    sum_,
)
from changeflow.scheduling import DependencyGraphScheduler, TickReport

from changeflow.common.exceptions import (
    ChangeFlowError,
    CursorExpiredError,
    CursorNotFoundError,
    CycleDetectedError,
    ErrorCode,
    InvalidRetentionError,
    MaterializationNotFoundError,
    NotInitializedError,
    RangeCompactedError,
    RefreshCancelledError,
    RefreshError,
    RefreshTimeoutError,
    TransientFailure,
    UnsupportedIncrementalPlanError,
    UntrackedTableError,
    ValidationError,
)
from changeflow.constants import (
    AggregateFunction,
    ChangeOperation,
    CursorMode,
    CursorState,
    Edition,
    InitializeMode,
    MaterializationStatus,
    RefreshMode,
    RefreshOutcome,
    SpecState,
    WindowFunction,
)
from changeflow.types import MaterializationSpec, TargetLag


__all__ = [
    "__version__",

    # Engine
    "ChangeFlowEngine",

    # Components
    "ChangeEntry",
    "ChangeLogStore",
    "InMemoryAuditTrail",
    "collapse_net_changes",
    "CursorManager",
    "RetentionManager",
    "TableStore",
    "IncrementalMaterializer",
    "CancellationToken",
    "classify",
    "DependencyGraphScheduler",
    "TickReport",

    # Plans
    "Aggregate",
    "AggregateCall",
    "Filter",
    "Join",
    "Project",
    "Scan",
    "Window",
    "avg",
    "count",
    "max_",
    "min_",
    "sum_",

    # Exceptions (public API)
    "ChangeFlowError",
    "CursorExpiredError",
    "CursorNotFoundError",
    "CycleDetectedError",
    "ErrorCode",
    "InvalidRetentionError",
    "MaterializationNotFoundError",
    "NotInitializedError",
    "RangeCompactedError",
    "RefreshCancelledError",
    "RefreshError",
    "RefreshTimeoutError",
    "TransientFailure",
    "UnsupportedIncrementalPlanError",
    "UntrackedTableError",
    "ValidationError",

    # Constants
    "AggregateFunction",
    "ChangeOperation",
    "CursorMode",
    "CursorState",
    "Edition",
    "InitializeMode",
    "MaterializationStatus",
    "RefreshMode",
    "RefreshOutcome",
    "SpecState",
    "WindowFunction",

    # Types
    "MaterializationSpec",
    "TargetLag",
]
