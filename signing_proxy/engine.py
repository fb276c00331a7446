"""
Reverse-proxy engine.

For every inbound request the engine copies the request into an outbound
request, lets the signing director rewrite and sign it, dispatches it to the
target and streams the response back with the configured flush cadence.

The engine is a plain ASGI application so it can be mounted as a catch-all
route that accepts every method and path.
"""

import logging
import time
from typing import Iterable, Optional

import httpx
from opentelemetry.trace import SpanKind, Status, StatusCode
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from .auth import SigningError
from .config import ProxyConfig
from .director import BodyReadError, BufferedBody, OutboundRequest, SigningDirector
from .metrics import MetricsEmitter
from .streaming import effective_flush_interval, relay
from .tracing import add_request_span_attributes, extract_context, get_tracer
from .transport import UpstreamError, create_client

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Recomputed for the outbound request
_REPLACED_HEADERS = frozenset({"host", "content-length"})


def connection_tokens(headers: Iterable[tuple[bytes, bytes]]) -> set[str]:
    """Header names listed in Connection headers."""
    tokens = set()
    for name, value in headers:
        if name.lower() == b"connection":
            for token in value.decode("latin-1").split(","):
                token = token.strip().lower()
                if token:
                    tokens.add(token)
    return tokens


def strip_hop_by_hop(
    headers: Iterable[tuple[bytes, bytes]],
    extra: frozenset = frozenset(),
) -> list[tuple[bytes, bytes]]:
    """
    Drop hop-by-hop headers from a raw header list.

    Args:
        headers: Raw (name, value) pairs
        extra: Further lower-cased names to drop

    Returns:
        Remaining pairs with lower-cased names, in their original order
    """
    headers = list(headers)
    dropped = HOP_BY_HOP_HEADERS | connection_tokens(headers) | extra
    return [
        (name.lower(), value)
        for name, value in headers
        if name.decode("latin-1").lower() not in dropped
    ]


def wire_path(raw_path: str) -> str:
    """
    The request path exactly as httpx will put it on the wire.

    httpx removes dot segments and quotes characters that are not allowed in
    a path, so the path is normalized the same way before it is signed.
    """
    if not raw_path.startswith("/"):
        raw_path = "/" + raw_path
    return httpx.URL(f"http://localhost{raw_path}").raw_path.decode("ascii").split("?", 1)[0]


class ProxyEngine:
    """
    Forwards requests to the target through the signing director.

    Attributes:
        config: Proxy configuration
        director: Signing director applied to every request
        client: Shared outbound httpx client
        metrics: Optional EMF metrics emitter
    """

    def __init__(
        self,
        config: ProxyConfig,
        director: SigningDirector,
        client: httpx.AsyncClient,
        metrics: Optional[MetricsEmitter] = None,
    ):
        self.config = config
        self.director = director
        self.client = client
        self.metrics = metrics

    @classmethod
    def from_config(
        cls,
        config: ProxyConfig,
        credential_provider,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[MetricsEmitter] = None,
    ) -> "ProxyEngine":
        """
        Build an engine and its collaborators from configuration.

        Args:
            config: Proxy configuration
            credential_provider: Object with a fetch() returning AWSCredentials
            transport: Optional outbound transport override
            metrics: Optional EMF metrics emitter

        Returns:
            Configured ProxyEngine
        """
        director = SigningDirector(
            target=config.target,
            credential_provider=credential_provider,
            region=config.region,
            strict=config.strict_signing,
            metrics=metrics,
        )
        return cls(config, director, create_client(config, transport), metrics)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        response = await self.handle(request)
        await response(scope, receive, send)

    async def aclose(self) -> None:
        await self.client.aclose()

    def build_outbound(self, request: Request) -> OutboundRequest:
        """Copy an inbound request into an outbound request for the director."""
        scope = request.scope
        raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
        raw_path = raw_path.split(b"?", 1)[0].decode("latin-1")

        headers = httpx.Headers(strip_hop_by_hop(scope["headers"], _REPLACED_HEADERS))
        client_host = request.client.host if request.client else None
        if client_host:
            prior = headers.get("x-forwarded-for")
            headers["x-forwarded-for"] = f"{prior}, {client_host}" if prior else client_host

        method = request.method
        has_body = (
            "content-length" in request.headers
            or "transfer-encoding" in request.headers
        )

        return OutboundRequest(
            method=method,
            path=wire_path(raw_path),
            query=scope.get("query_string", b"").decode("latin-1"),
            headers=headers,
            body=request.stream() if has_body else None,
            client_host=client_host,
        )

    async def send(self, req: OutboundRequest) -> httpx.Response:
        """
        Dispatch an outbound request and return the streaming response.

        Raises:
            UpstreamError: If the target cannot be reached
        """
        content = req.body.data if isinstance(req.body, BufferedBody) else None
        outbound = self.client.build_request(
            req.method,
            req.url,
            headers=req.headers,
            content=content,
        )
        try:
            return await self.client.send(outbound, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(f"error reaching {self.config.target.host}: {e}", e) from e

    async def _read_upstream(self, upstream: httpx.Response):
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Error reading response body from {self.config.target.host}: {e}")
            if self.metrics:
                self.metrics.record_upstream_error(type(e).__name__, str(e))
            raise UpstreamError(f"error reading from {self.config.target.host}: {e}", e) from e

    async def _stream_body(self, upstream: httpx.Response, flush_interval: float):
        try:
            async for data in relay(self._read_upstream(upstream), flush_interval):
                yield data
        finally:
            await upstream.aclose()

    def _relay_response(self, upstream: httpx.Response) -> StreamingResponse:
        flush_interval = effective_flush_interval(
            self.config.flush_interval,
            upstream.headers.get("content-type", ""),
        )
        response = StreamingResponse(
            self._stream_body(upstream, flush_interval),
            status_code=upstream.status_code,
        )
        response.raw_headers = strip_hop_by_hop(upstream.headers.raw)
        return response

    async def handle(self, request: Request) -> Response:
        """
        Proxy one request to the target.

        Args:
            request: Inbound request

        Returns:
            The relayed upstream response, or an empty 400/502 response when
            the request cannot be read, signed or delivered
        """
        start = time.perf_counter()
        tracer = get_tracer()

        with tracer.start_as_current_span(
            "proxy.request",
            context=extract_context(request.headers),
            kind=SpanKind.SERVER,
        ) as span:
            outbound = self.build_outbound(request)
            add_request_span_attributes(
                span,
                method=outbound.method,
                path=outbound.path,
                target=self.config.target.host,
            )

            try:
                signed = await self.director.direct(outbound)
            except BodyReadError as e:
                logger.warning(f"Rejecting {outbound.method} {outbound.path}: {e}")
                response = Response(status_code=400)
            except SigningError as e:
                logger.error(f"Rejecting {outbound.method} {outbound.path}: error signing: {e}")
                response = Response(status_code=502)
            else:
                add_request_span_attributes(span, signed=signed is not None)
                try:
                    upstream = await self.send(outbound)
                except UpstreamError as e:
                    logger.error(f"Upstream request failed: {e}")
                    if self.metrics:
                        self.metrics.record_upstream_error(type(e.cause).__name__, str(e))
                    response = Response(status_code=502)
                else:
                    response = self._relay_response(upstream)

            add_request_span_attributes(span, status_code=response.status_code)
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR))

        latency_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"{request.method} {outbound.path} -> {response.status_code} ({latency_ms:.1f}ms)"
        )
        if self.metrics:
            self.metrics.record_request(
                method=outbound.method,
                status_code=response.status_code,
                latency_ms=latency_ms,
                path=outbound.path,
            )
        return response
