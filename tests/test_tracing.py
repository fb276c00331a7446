"""Tests for the OpenTelemetry tracing module."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

import signing_proxy.tracing as tracing_module
from signing_proxy.tracing import (
    add_request_span_attributes,
    get_tracer,
    init_tracing,
    shutdown_tracing,
    traced,
)


@pytest.fixture
def reset_tracing():
    """Reset global tracing state and keep httpx uninstrumented."""
    tracing_module._tracer = None
    tracing_module._initialized = False
    with patch("signing_proxy.tracing.HTTPXClientInstrumentor") as instrumentor:
        yield instrumentor
    tracing_module.shutdown_tracing()
    tracing_module._tracer = None
    tracing_module._initialized = False


@pytest.fixture
def exporter():
    """Route spans from the module tracer into memory."""
    span_exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    with patch.object(tracing_module, "_tracer", provider.get_tracer("test")):
        yield span_exporter


class TestTracingInitialization:
    """Tests for tracing initialization."""

    def test_init_tracing_returns_tracer(self, reset_tracing):
        """Test that init_tracing returns a tracer instance."""
        tracer = init_tracing(service_name="test-service")

        assert isinstance(tracer, trace.Tracer)
        reset_tracing.return_value.instrument.assert_called_once()

    def test_init_tracing_is_idempotent(self, reset_tracing):
        """Test that calling init_tracing multiple times returns same tracer."""
        tracer1 = init_tracing(service_name="test-service")
        tracer2 = init_tracing(service_name="test-service")

        assert tracer1 is tracer2
        reset_tracing.return_value.instrument.assert_called_once()

    def test_get_tracer_without_init(self, reset_tracing):
        """Test that get_tracer works before initialization."""
        assert get_tracer() is not None
        assert tracing_module._initialized is False

    def test_init_with_console_export(self, reset_tracing):
        """Test initialization with console export enabled."""
        tracer = init_tracing(service_name="test-service", enable_console_export=True)

        assert tracer is not None

    def test_shutdown_flushes_provider(self, reset_tracing):
        """Test that shutdown stops the provider once."""
        init_tracing(service_name="test-service")
        provider = tracing_module._provider

        with patch.object(provider, "shutdown") as shutdown:
            shutdown_tracing()
            shutdown_tracing()

        shutdown.assert_called_once()
        assert tracing_module._provider is None


class TestTracedDecorator:
    """Tests for the @traced decorator."""

    def test_traced_sync_function(self, exporter):
        """Test tracing a synchronous function."""
        @traced(name="test_operation")
        def sample_function(x: int) -> int:
            return x * 2

        assert sample_function(5) == 10
        spans = exporter.get_finished_spans()
        assert [span.name for span in spans] == ["test_operation"]
        assert spans[0].status.status_code == StatusCode.OK

    def test_traced_sync_function_with_exception(self, exporter):
        """Test that traced decorator records exceptions."""
        @traced(name="failing_operation")
        def failing_function():
            raise ValueError("Test error")

        with pytest.raises(ValueError, match="Test error"):
            failing_function()

        span = exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.events[0].name == "exception"

    @pytest.mark.asyncio
    async def test_traced_async_function(self, exporter):
        """Test tracing an asynchronous function."""
        @traced(name="async_operation")
        async def async_sample_function(x: int) -> int:
            return x * 3

        assert await async_sample_function(4) == 12
        assert exporter.get_finished_spans()[0].name == "async_operation"

    def test_traced_with_attributes(self, exporter):
        """Test traced decorator with custom attributes."""
        @traced(name="attributed_operation", attributes={"custom.key": "custom_value"})
        def attributed_function() -> str:
            return "success"

        assert attributed_function() == "success"
        assert exporter.get_finished_spans()[0].attributes["custom.key"] == "custom_value"


class TestRequestSpans:
    """Tests for proxied-request spans."""

    def test_add_request_span_attributes(self, exporter):
        """Test adding request attributes to a span."""
        with get_tracer().start_as_current_span("test_span") as span:
            add_request_span_attributes(
                span,
                method="GET",
                path="/_search",
                target="search.example.com",
                status_code=200,
                signed=True,
            )

        attributes = exporter.get_finished_spans()[0].attributes
        assert attributes["http.request.method"] == "GET"
        assert attributes["url.path"] == "/_search"
        assert attributes["server.address"] == "search.example.com"
        assert attributes["http.response.status_code"] == 200
        assert attributes["proxy.signed"] is True

    def test_partial_attributes(self, exporter):
        """Test that missing values are not set."""
        with get_tracer().start_as_current_span("test_span") as span:
            add_request_span_attributes(span, method="PUT")

        attributes = exporter.get_finished_spans()[0].attributes
        assert dict(attributes) == {"http.request.method": "PUT"}

    def test_proxied_request_spans(self, exporter, proxy_app):
        """Test that a proxied request produces request and signing spans."""
        with TestClient(proxy_app) as client:
            client.get("/_search?q=test")

        spans = {span.name: span for span in exporter.get_finished_spans()}
        assert "sigv4.sign" in spans
        request_span = spans["proxy.request"]
        assert request_span.kind == trace.SpanKind.SERVER
        assert request_span.attributes["http.response.status_code"] == 200
        assert request_span.attributes["proxy.signed"] is True
        assert spans["sigv4.sign"].parent.span_id == request_span.context.span_id
