import functools
import time
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from opentelemetry.trace import SpanKind, Status, StatusCode

from changeflow.telemetry import get_tracer


F = TypeVar('F', bound=Callable[..., Any])
T = TypeVar('T')

logger = None


def _get_logger():
    """Get logger instance lazily."""
    global logger
    if logger is None:
        from changeflow.logging import get_logger
        logger = get_logger(__name__)
    return logger


def traced(
    span_name: Optional[str] = None,
    *,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: Optional[Dict[str, Any]] = None,
    attribute_getter: Optional[Callable[..., Optional[Dict[str, Any]]]] = None,
) -> Callable[[F], F]:
    """Run a function inside an OpenTelemetry span.

    Args:
        span_name: Span name; defaults to the module-qualified function name
        kind: Span kind
        attributes: Static span attributes
        attribute_getter: Called with the function's arguments; returns
            attributes known only at call time (table or target id)

    Example:
        >>> @traced("changeflow.retention.compact",
        ...         attribute_getter=lambda self, table_id: {"changeflow.table_id": table_id})
        ... def compact(self, table_id): ...
    """

    def decorator(func: F) -> F:
        name = span_name or f"{func.__module__}.{func.__qualname__}"

        def _collect_attributes(args: tuple, kwargs: dict) -> Dict[str, Any]:
            collected: Dict[str, Any] = {}
            if attributes:
                collected.update({k: v for k, v in attributes.items() if v is not None})
            if attribute_getter:
                try:
                    dynamic_attrs = attribute_getter(*args, **kwargs)
                except Exception as exc:
                    # A bad getter costs span attributes, never the call.
                    _get_logger().warning(
                        "trace.attributes.failed",
                        extra={"span": name, "error_message": str(exc)},
                    )
                    dynamic_attrs = None
                if dynamic_attrs:
                    collected.update({k: v for k, v in dynamic_attrs.items() if v is not None})
            return collected

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = get_tracer(func.__module__)
            with tracer.start_as_current_span(name, kind=kind) as span:
                for key, value in _collect_attributes(args, kwargs).items():
                    span.set_attribute(key, value)
                try:
                    return func(*args, **kwargs)
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    raise

        return wrapper  # type: ignore[return-value]

    return decorator


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
    retry_condition: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry a callable with exponential backoff.

    The delay before retry ``n`` (0-based) is
    ``min(initial_delay * exponential_base ** n, max_delay)``. Total attempts
    are ``max_retries + 1``.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry, in seconds
        max_delay: Cap on the delay
        exponential_base: Growth factor of the delay
        retry_on: Exception types to retry; None retries every exception
        retry_condition: Extra predicate an exception must satisfy
        sleep: Wait function, replaced in tests

    Raises:
        The last exception once attempts are exhausted or it is not retryable.

    Example:
        >>> @retry_with_backoff(max_retries=5, retry_on=(TransientFailure,))
        ... def load_snapshot():
        ...     return provider.snapshot("orders")
    """
    def _should_retry(exc: Exception) -> bool:
        should_retry = retry_on is None or isinstance(exc, retry_on)
        if should_retry and retry_condition:
            should_retry = retry_condition(exc)
        return should_retry

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        operation = getattr(func, "__name__", repr(func))

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as exc:
                    if not _should_retry(exc):
                        raise
                    if attempt == max_retries:
                        _get_logger().error(
                            "retry.exhausted",
                            extra={"operation": operation, "attempts": attempt + 1,
                                   "error_message": str(exc)},
                        )
                        raise
                    _get_logger().warning(
                        "retry.attempt_failed",
                        extra={"operation": operation, "attempt": attempt + 1,
                               "delay_seconds": delay, "error_message": str(exc)},
                    )
                    sleep(delay)
                    delay = min(delay * exponential_base, max_delay)
            raise RuntimeError("unreachable")  # pragma: no cover

        return wrapper

    return decorator
