"""Change-tracking constants and enumerations.

This module defines the enumerations shared by the change log store, the
cursor manager and the retention manager.
"""

from enum import Enum


class ChangeOperation(str, Enum):
    """Row-level operation recorded in a change log.

    An UPDATE is never recorded as its own operation. It is written as a
    DELETE of the old row immediately followed by an INSERT of the new row,
    both flagged ``is_update`` and sharing a ``row_identity``.
    """

    INSERT = "INSERT"
    DELETE = "DELETE"


class CursorMode(str, Enum):
    """Which operations a cursor exposes to its consumer.

    Values:
        DEFAULT: Every operation type (inserts, deletes and update pairs).
        APPEND_ONLY: Inserts only. An update surfaces as the insert of its
            final state; plain deletes never surface.
    """

    DEFAULT = "default"
    APPEND_ONLY = "append_only"


class CursorState(str, Enum):
    """Lifecycle state of a cursor.

    Values:
        ACTIVE: The cursor protects its unconsumed history from compaction.
        STALE: Compaction has outrun the cursor; it must be re-baselined.
    """

    ACTIVE = "active"
    STALE = "stale"


class AuditAction(str, Enum):
    """Actions reported to audit hooks."""

    APPEND = "append"
    ADVANCE = "advance"
    COMPACT = "compact"


class Edition(str, Enum):
    """Service edition. The edition bounds the maximum retention window."""

    STANDARD = "standard"
    ENTERPRISE = "enterprise"


# Maximum retention window per edition, in days.
RETENTION_CEILING_DAYS = {
    Edition.STANDARD: 1,
    Edition.ENTERPRISE: 90,
}
