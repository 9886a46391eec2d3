"""Request context shared by logs, spans and audit events."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry.trace import Span, Status, StatusCode
from pydantic import Field

from changeflow.logging.filters import clear_request_context, set_request_context
from changeflow.telemetry import get_tracer
from changeflow.types.base import ChangeFlowModel


class ExecutionRequestContext(ChangeFlowModel):
    """Identity of one unit of work (a refresh, a compaction sweep).

    ``actor`` is the caller identity handed in by the access control layer.
    It is not checked here; it is only carried into logs, spans and audit
    events.
    """

    request_id: str
    actor: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def generate(cls, **kwargs: Any) -> "ExecutionRequestContext":
        """New context with a unique request id."""
        return cls(request_id=str(uuid.uuid4()), **kwargs)

    @staticmethod
    def _stringify(value: Any) -> Optional[str]:
        if value is None:
            return None
        if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
            return value.value
        return str(value)

    def to_telemetry_dict(self) -> Dict[str, str]:
        payload: Dict[str, str] = {"request_id": self.request_id}
        if self.actor:
            payload["actor"] = self.actor
        for key, value in self.attributes.items():
            sanitized = self._stringify(value)
            if sanitized is not None:
                payload[f"ctx.{key}"] = sanitized
        return payload


@contextmanager
def execution_request_scope(ctx: ExecutionRequestContext, *, operation: str) -> Iterator[Span]:
    """Bind the request to the logging context and open a span for it.

    Log records emitted inside the block carry the request id and actor. An
    exception is recorded on the span and re-raised.
    """
    set_request_context(request_id=ctx.request_id, actor=ctx.actor)

    tracer = get_tracer("changeflow")
    with tracer.start_as_current_span(operation) as span:
        for key, value in ctx.to_telemetry_dict().items():
            span.set_attribute(f"changeflow.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR))
            raise
        finally:
            clear_request_context()


def sanitize_extras(
    extra: Optional[Dict[str, Any]],
    *,
    prefix: Optional[str] = None,
) -> Dict[str, str]:
    """Stringify ``extra`` values for logging; None values are dropped."""
    if not extra:
        return {}

    result: Dict[str, str] = {}
    for key, value in extra.items():
        sanitized = ExecutionRequestContext._stringify(value)
        if sanitized is None:
            continue
        field = f"{prefix}{key}" if prefix else str(key)
        result[field] = sanitized
    return result


def merge_telemetry(
    ctx: ExecutionRequestContext,
    *,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, str]:
    """Request telemetry plus additional key/value pairs."""
    payload = ctx.to_telemetry_dict()
    if extra:
        payload.update(sanitize_extras(extra))
    return payload
