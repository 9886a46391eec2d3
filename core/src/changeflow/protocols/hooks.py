"""Hook protocol definitions.

Protocols for the narrow interfaces changeflow exposes to, or expects from,
surrounding components.
"""

from typing import Protocol, runtime_checkable

from changeflow.types.changes import AuditEvent
from changeflow.types.materialization import SourceSnapshot


@runtime_checkable
class AuditHook(Protocol):
    """Receives audit events for appends, cursor advances and compactions.

    The access control layer passes the actor identity into the operation;
    the hook receives it unchanged on the event.
    """

    def __call__(self, event: AuditEvent) -> None:
        ...


@runtime_checkable
class SnapshotProvider(Protocol):
    """Supplies consistent snapshots of a source for full recomputes.

    The returned ``position`` must be the change log head at which the rows
    were read, so that deltas after it can be applied on top.
    """

    def snapshot(self, source_id: str) -> SourceSnapshot:
        ...

    def provides(self, source_id: str) -> bool:
        ...
