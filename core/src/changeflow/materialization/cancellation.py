"""Cooperative cancellation for long-running refreshes."""

import threading
import time
from typing import Callable, Optional

from changeflow.common.exceptions import RefreshCancelledError, RefreshTimeoutError


class CancellationToken:
    """Signals a refresh to stop at its next checkpoint.

    A token is cancelled explicitly through ``cancel`` or implicitly once
    its deadline passes. Evaluation loops call ``tick`` per row; the token
    only looks at the clock every ``check_interval`` ticks.

    Example:
        >>> token = CancellationToken(timeout_seconds=60)
        >>> token.check()  # raises once cancelled or timed out
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        check_interval: int = 1000,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._event = threading.Event()
        self._monotonic = monotonic
        self._timeout = timeout_seconds
        self._deadline = None if timeout_seconds is None else monotonic() + timeout_seconds
        self._check_interval = max(1, check_interval)
        self._ticks = 0
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and self._monotonic() >= self._deadline

    def check(self, target_id: Optional[str] = None) -> None:
        """Raise if the refresh must stop.

        Raises:
            RefreshTimeoutError: When the deadline has passed
            RefreshCancelledError: When ``cancel`` was called
        """
        if self._event.is_set() and self._reason != "timeout":
            raise RefreshCancelledError(
                f"Refresh of '{target_id}' was cancelled: {self._reason}",
                details={"target_id": target_id, "reason": self._reason},
            )
        if self._reason == "timeout" or self.timed_out:
            self._reason = "timeout"
            self._event.set()
            raise RefreshTimeoutError(
                f"Refresh of '{target_id}' exceeded its budget of {self._timeout} seconds",
                details={"target_id": target_id, "timeout_seconds": self._timeout},
            )

    def tick(self, target_id: Optional[str] = None) -> None:
        self._ticks += 1
        if self._ticks % self._check_interval == 0:
            self.check(target_id)
