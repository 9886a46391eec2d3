"""Change Log Store: append-only per-table ledgers of row-level deltas."""

from changeflow.changelog.audit import AuditDispatcher, InMemoryAuditTrail
from changeflow.changelog.netting import collapse_net_changes
from changeflow.changelog.store import ChangeEntry, ChangeLogStore

__all__ = [
    "AuditDispatcher",
    "ChangeEntry",
    "ChangeLogStore",
    "InMemoryAuditTrail",
    "collapse_net_changes",
]
