"""Per-refresh instrumentation."""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from changeflow.logging import get_logger
from changeflow.observability.context import (
    ExecutionRequestContext,
    execution_request_scope,
    merge_telemetry,
    sanitize_extras,
)

logger = get_logger(__name__)


@contextmanager
def refresh_instrumentation(
    ctx: ExecutionRequestContext,
    *,
    target_id: str,
    attributes: Optional[Dict[str, str]] = None,
) -> Iterator[Dict[str, str]]:
    """Instrument a single derived table refresh.

    Opens a request scope with a span named after the target. Yields the
    telemetry payload so the caller can add attributes (the chosen strategy,
    row counts) that end up on the span when the block exits.
    """
    telemetry_payload = merge_telemetry(ctx, extra={"refresh.target": target_id})
    telemetry_payload.update(sanitize_extras(attributes))

    start_time = time.perf_counter()
    with execution_request_scope(ctx, operation=f"changeflow.refresh.{target_id}") as span:
        try:
            yield telemetry_payload
        except Exception:
            telemetry_payload["elapsed_seconds"] = f"{time.perf_counter() - start_time:.3f}"
            logger.debug("refresh.span.error", extra=dict(telemetry_payload))
            raise
        finally:
            for key, value in telemetry_payload.items():
                span.set_attribute(f"changeflow.{key}", value)
