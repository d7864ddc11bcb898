"""
OpenTelemetry tracing integration.

Spans wrap pipeline runs, stages and model API attempts. Without an OTLP
endpoint the provider records nothing, so tracing stays cheap in tests.
"""

import functools
import inspect
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import NoOpTracer, Status, StatusCode

from .logging import get_logger

logger = get_logger(__name__)


class TracingManager:
    """Manages OpenTelemetry tracing configuration."""

    def __init__(self, service_name: str = "crewfusion", service_version: str = "0.1.0"):
        self.service_name = service_name
        self.service_version = service_version
        self.tracer_provider: TracerProvider | None = None
        self.tracer: trace.Tracer = NoOpTracer()
        self._initialized = False

    def initialize(self, otlp_endpoint: str | None = None) -> None:
        """Install an SDK tracer provider, exporting over OTLP when configured."""
        if self._initialized:
            return

        resource = Resource.create(
            {"service.name": self.service_name, "service.version": self.service_version}
        )
        self.tracer_provider = TracerProvider(resource=resource)
        if otlp_endpoint:
            self.tracer_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )
            logger.info("OTLP span export enabled", endpoint=otlp_endpoint)

        self.tracer = self.tracer_provider.get_tracer(self.service_name, self.service_version)
        self._initialized = True

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None):
        """Context manager for creating spans."""
        with self.tracer.start_as_current_span(name) as span:
            for key, value in (attributes or {}).items():
                span.set_attribute(key, str(value))
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    def shutdown(self) -> None:
        if self.tracer_provider:
            self.tracer_provider.shutdown()
        self.tracer = NoOpTracer()
        self._initialized = False


_tracing_manager: TracingManager | None = None


def setup_tracing(
    service_name: str = "crewfusion", otlp_endpoint: str | None = None
) -> TracingManager:
    """Setup the global tracing manager."""
    global _tracing_manager
    _tracing_manager = TracingManager(service_name=service_name)
    _tracing_manager.initialize(otlp_endpoint)
    return _tracing_manager


def get_tracing_manager() -> TracingManager:
    """Get the global tracing manager; spans are no-ops until ``setup_tracing``."""
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager()
    return _tracing_manager


def trace_span(name: str | None = None, attributes: dict[str, Any] | None = None):
    """Decorator wrapping a coroutine function in a span."""

    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"trace_span only supports coroutine functions, got {func!r}")

        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            span_attributes = {"function.name": func.__name__, **(attributes or {})}
            with get_tracing_manager().span(span_name, span_attributes) as span:
                result = await func(*args, **kwargs)
                if hasattr(result, "status"):
                    span.set_attribute("result.status", str(result.status))
                span.set_status(Status(StatusCode.OK))
                return result

        return async_wrapper

    return decorator
