"""
Tracers injected into engine components.

Components never subclass a tracing mixin; they receive a ``Tracer`` and
open spans around their public operations:

    >>> from assetmigrate.observability import create_tracer
    >>>
    >>> class CheckpointStore:
    ...     def __init__(self, tracer=None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
    ...
    ...     async def save(self, checkpoint) -> None:
    ...         with self._tracer.span(
    ...             "assetmigrate.checkpoint_store.save",
    ...             {ATTR_RUN_ID: checkpoint.run_id},
    ...         ):
    ...             ...

A span whose body raises is tagged with ``error.type`` and, for migration
errors, ``migration.error.code`` before the exception continues.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from opentelemetry.trace import Span

from assetmigrate.observability.attributes import ATTR_ERROR_CODE, ATTR_ERROR_TYPE
from assetmigrate.observability.tracing import OTEL_AVAILABLE


def error_attributes(error: BaseException) -> dict[str, Any]:
    """Span attributes describing ``error``."""
    attributes: dict[str, Any] = {ATTR_ERROR_TYPE: type(error).__name__}
    code = getattr(error, "error_code", None)
    if isinstance(code, str):
        attributes[ATTR_ERROR_CODE] = code
    return attributes


@runtime_checkable
class Tracer(Protocol):
    """
    Anything that can open a span.

    Implementations:
    - NullTracer: tracing disabled or OpenTelemetry missing
    - OpenTelemetryTracer: real spans
    - MockTracer: records spans for assertions
    """

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span named ``name`` (e.g. "assetmigrate.lock_manager.acquire").

        Yields the span, or None when nothing is recorded.
        """
        ...

    @property
    def enabled(self) -> bool:
        """True if spans are recorded, so attribute computation is worthwhile."""
        ...


class NullTracer:
    """Tracer that records nothing."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by ``opentelemetry.trace``.

    Spans are made current, so item spans nest under the batch span that
    started them.

    Args:
        tracer_name: Instrumentation scope, usually the module's ``__name__``.
    """

    def __init__(self, tracer_name: str) -> None:
        from opentelemetry import trace

        self._tracer = trace.get_tracer(tracer_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        with self._tracer.start_as_current_span(name, attributes=attributes or {}) as span:
            try:
                yield span
            except Exception as e:
                span.set_attributes(error_attributes(e))
                raise

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Tracer for tests.

    ``spans`` holds ``(name, attributes)`` in the order spans were opened;
    ``errors`` holds ``(name, error attributes)`` for spans whose body raised.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("assetmigrate.transfer.process", {ATTR_ITEM_ID: "r-1"}):
        ...     pass
        >>> tracer.span_names
        ['assetmigrate.transfer.process']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []
        self.errors: list[tuple[str, dict[str, Any]]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        try:
            yield None
        except Exception as e:
            self.errors.append((name, error_attributes(e)))
            raise

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def count(self, name: str) -> int:
        """Number of spans opened with ``name``."""
        return sum(1 for span_name, _ in self.spans if span_name == name)

    def clear(self) -> None:
        self.spans.clear()
        self.errors.clear()


def create_tracer(
    name: str,
    enable_tracing: bool = True,
) -> Tracer:
    """
    Build the tracer a component should use.

    Returns an OpenTelemetryTracer when ``enable_tracing`` is set and
    OpenTelemetry is importable, otherwise a NullTracer.
    """
    if enable_tracing and OTEL_AVAILABLE:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "error_attributes",
]
