"""
OpenTelemetry availability and the ``traced`` decorator.

OpenTelemetry is optional. This module is the single place that decides
whether it is importable; every other module asks ``OTEL_AVAILABLE``.

Example:
    >>> from assetmigrate.observability import traced, create_tracer
    >>>
    >>> class Verifier:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
    ...
    ...     @traced(
    ...         "assetmigrate.verifier.check_item",
    ...         attributes_from=lambda item: {ATTR_ITEM_ID: item.item_id},
    ...     )
    ...     async def check(self, item: WorkItem) -> None:
    ...         ...
"""

from __future__ import annotations

import functools
import inspect
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer as OtelTracer

try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


def get_tracer(name: str) -> OtelTracer | None:
    """The OpenTelemetry tracer for ``name``, or None without OpenTelemetry."""
    if OTEL_AVAILABLE and trace is not None:
        return trace.get_tracer(name)
    return None


def should_trace(enable_tracing: bool) -> bool:
    return enable_tracing and OTEL_AVAILABLE


P = ParamSpec("P")
R = TypeVar("R")


def traced(
    name: str,
    attributes: dict[str, Any] | None = None,
    *,
    attributes_from: Callable[..., dict[str, Any]] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Wrap a method in a span opened on ``self._tracer``.

    The instance must expose ``_tracer`` and ``_enable_tracing``; when
    tracing is off (or there is no tracer) the method runs unwrapped.

    Args:
        name: Span name, e.g. "assetmigrate.verifier.check_item".
        attributes: Static span attributes.
        attributes_from: Called with the method's arguments (without
            ``self``); its result is merged over ``attributes``. Only
            evaluated when a span is actually opened.
    """

    def span_attributes(args: tuple[Any, ...], kwargs: dict[str, Any]) -> dict[str, Any]:
        merged = dict(attributes or {})
        if attributes_from is not None:
            merged.update(attributes_from(*args, **kwargs))
        return merged

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @functools.wraps(func)
        async def async_wrapper(self: Any, *args: P.args, **kwargs: P.kwargs) -> R:
            tracer = getattr(self, "_tracer", None)
            if not getattr(self, "_enable_tracing", False) or tracer is None:
                return await func(self, *args, **kwargs)  # type: ignore[misc, no-any-return]

            with tracer.span(name, span_attributes(args, kwargs)):
                return await func(self, *args, **kwargs)  # type: ignore[misc, no-any-return]

        @functools.wraps(func)
        def sync_wrapper(self: Any, *args: P.args, **kwargs: P.kwargs) -> R:
            tracer = getattr(self, "_tracer", None)
            if not getattr(self, "_enable_tracing", False) or tracer is None:
                return func(self, *args, **kwargs)

            with tracer.span(name, span_attributes(args, kwargs)):
                return func(self, *args, **kwargs)

        if inspect.iscoroutinefunction(func):
            return async_wrapper  # type: ignore[return-value]
        return sync_wrapper  # type: ignore[return-value]

    return decorator


__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
    "traced",
]
