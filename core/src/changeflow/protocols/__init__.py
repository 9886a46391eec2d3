"""Protocol definitions for changeflow collaborators."""

from changeflow.protocols.hooks import AuditHook, SnapshotProvider

__all__ = ["AuditHook", "SnapshotProvider"]
