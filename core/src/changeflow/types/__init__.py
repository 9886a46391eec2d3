"""Type definitions for changeflow."""

from changeflow.types.base import ChangeFlowModel
from changeflow.types.changes import (
    AuditEvent,
    ChangeRecord,
    CompactionResult,
    Cursor,
    NetChange,
    RetentionWindow,
    RowPredicate,
)
from changeflow.types.introspection import DynamicTableInfo, StreamInfo
from changeflow.types.materialization import (
    DependencyEdge,
    MaterializationSpec,
    RefreshResult,
    Relation,
    SourceSnapshot,
    TargetLag,
)

__all__ = [
    "ChangeFlowModel",
    "AuditEvent",
    "ChangeRecord",
    "CompactionResult",
    "Cursor",
    "NetChange",
    "RetentionWindow",
    "RowPredicate",
    "DynamicTableInfo",
    "StreamInfo",
    "DependencyEdge",
    "MaterializationSpec",
    "RefreshResult",
    "Relation",
    "SourceSnapshot",
    "TargetLag",
]
