"""Audit hook dispatch for change log and cursor operations."""

import threading
from typing import List

from changeflow.logging import get_logger
from changeflow.observability.context import sanitize_extras
from changeflow.protocols.hooks import AuditHook
from changeflow.types.changes import AuditEvent

logger = get_logger(__name__)


class AuditDispatcher:
    """Fans audit events out to registered hooks.

    A failing hook never undoes the operation it reports on: the event is
    logged with the hook failure and the remaining hooks still run.
    """

    def __init__(self) -> None:
        self._hooks: List[AuditHook] = []
        self._lock = threading.Lock()

    def register(self, hook: AuditHook) -> None:
        with self._lock:
            self._hooks.append(hook)

    def unregister(self, hook: AuditHook) -> None:
        with self._lock:
            self._hooks = [h for h in self._hooks if h is not hook]

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            hooks = list(self._hooks)
        for hook in hooks:
            try:
                hook(event)
            except Exception:
                logger.error(
                    "audit.hook_failed",
                    extra=sanitize_extras({
                        "action": event.action,
                        "table_id": event.table_id,
                        "hook": repr(hook),
                    }),
                    exc_info=True,
                )


class InMemoryAuditTrail:
    """Audit hook that keeps every event in memory, for inspection and tests."""

    def __init__(self) -> None:
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
