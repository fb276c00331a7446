"""
OpenTelemetry tracing for the AWS signing proxy.

Tracing is off unless an OTLP endpoint or console export is configured. When
enabled, trace ids use the X-Ray format and context is read from inbound
X-Amzn-Trace-Id headers, so proxied requests join the caller's X-Ray trace.
Each proxied request gets a SERVER span with a child span for signing, and
the httpx instrumentation adds a CLIENT span for the call to the target.

Without initialization the OpenTelemetry API hands out no-op tracers, so the
helpers here are always safe to call.
"""

import asyncio
import contextlib
import logging
import os
from functools import wraps
from typing import Any, Callable, Iterator, Mapping, Optional, ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.propagate import extract, set_global_textmap
from opentelemetry.propagators.aws import AwsXRayPropagator
from opentelemetry.sdk.extension.aws.trace import AwsXRayIdGenerator
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

from . import __version__

logger = logging.getLogger(__name__)

TRACER_NAME = "aws-signing-proxy"

P = ParamSpec("P")
T = TypeVar("T")

_tracer: Optional[trace.Tracer] = None
_provider: Optional[TracerProvider] = None
_initialized = False


def init_tracing(
    service_name: str = TRACER_NAME,
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> trace.Tracer:
    """
    Install the global tracer provider. Calling it again is a no-op.

    Args:
        service_name: service.name resource attribute
        otlp_endpoint: OTLP gRPC collector endpoint (e.g. "http://localhost:4317")
        enable_console_export: Also print finished spans to stdout

    Returns:
        Tracer for proxy spans
    """
    global _tracer, _provider, _initialized

    if _initialized and _tracer is not None:
        return _tracer

    _provider = TracerProvider(
        resource=Resource.create({
            SERVICE_NAME: service_name,
            "service.version": __version__,
            "deployment.environment": os.getenv("ENVIRONMENT", "development"),
        }),
        id_generator=AwsXRayIdGenerator(),
    )

    exporters = []
    if otlp_endpoint:
        exporters.append(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
    if enable_console_export:
        exporters.append(ConsoleSpanExporter())
    for exporter in exporters:
        _provider.add_span_processor(BatchSpanProcessor(exporter))

    set_global_textmap(AwsXRayPropagator())
    trace.set_tracer_provider(_provider)
    HTTPXClientInstrumentor().instrument()

    _tracer = trace.get_tracer(service_name)
    _initialized = True
    logger.info(f"Tracing enabled (otlp={otlp_endpoint or 'off'}, console={enable_console_export})")
    return _tracer


def shutdown_tracing() -> None:
    """Flush pending spans and stop exporting."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def get_tracer() -> trace.Tracer:
    """The proxy tracer, or the API's no-op tracer before initialization."""
    return _tracer if _tracer is not None else trace.get_tracer(TRACER_NAME)


def extract_context(headers: Mapping[str, str]) -> Context:
    """Trace context carried by inbound request headers."""
    return extract(headers)


@contextlib.contextmanager
def _recorded_span(name: str, attributes: Optional[dict[str, Any]]) -> Iterator[trace.Span]:
    with get_tracer().start_as_current_span(
        name,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise
        span.set_status(Status(StatusCode.OK))


def traced(
    name: Optional[str] = None,
    attributes: Optional[dict[str, Any]] = None,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Run the decorated function (sync or async) inside a span.

    Args:
        name: Span name (defaults to the function name)
        attributes: Attributes set on the span

    Returns:
        Decorator
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        span_name = name or func.__name__

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                with _recorded_span(span_name, attributes):
                    return await func(*args, **kwargs)  # type: ignore
            return async_wrapper  # type: ignore

        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            with _recorded_span(span_name, attributes):
                return func(*args, **kwargs)
        return wrapper

    return decorator


def add_request_span_attributes(
    span: trace.Span,
    method: Optional[str] = None,
    path: Optional[str] = None,
    target: Optional[str] = None,
    status_code: Optional[int] = None,
    signed: Optional[bool] = None,
) -> None:
    """
    Set proxied-request attributes on a span, skipping unset values.

    Args:
        span: The span to add attributes to
        method: HTTP method
        path: Request path
        target: Target host
        status_code: Status returned to the client
        signed: Whether the request carried a signature
    """
    attributes = {
        "http.request.method": method or None,
        "url.path": path or None,
        "server.address": target or None,
        "http.response.status_code": status_code,
        "proxy.signed": signed,
    }
    span.set_attributes({key: value for key, value in attributes.items() if value is not None})
