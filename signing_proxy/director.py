"""
Request-signing director.

The director prepares an outbound request for the target domain in place:
it rewrites the destination, buffers the body so the same bytes can be hashed
and forwarded, signs the request with SigV4 and merges the resulting
authentication headers.

Usage:
    director = SigningDirector(
        target=TargetEndpoint.from_url("https://search.example.com"),
        credential_provider=CredentialProvider(),
        region="us-east-1",
    )
    await director.direct(outbound_request)
"""

import asyncio
import datetime
import io
import logging
from dataclasses import dataclass
from typing import AsyncIterable, Callable, Optional, Union

import httpx

from .auth import (
    SERVICE_NAME,
    AWSCredentials,
    CredentialsError,
    SignedHeaders,
    SigningError,
    SigV4Auth,
)
from .config import TargetEndpoint
from .metrics import MetricsEmitter
from .tracing import traced

logger = logging.getLogger(__name__)


class BodyReadError(Exception):
    """Raised when the inbound request body cannot be read."""


class BufferedBody:
    """An owned copy of a request body with independent read cursors."""

    def __init__(self, data: bytes = b""):
        self._data = bytes(data)

    @property
    def data(self) -> bytes:
        return self._data

    def open(self) -> io.BytesIO:
        """Return a fresh reader positioned at the start of the body."""
        return io.BytesIO(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return self._data

    def __repr__(self) -> str:
        return f"BufferedBody({len(self._data)} bytes)"


@dataclass
class OutboundRequest:
    """A request on its way to the target, owned by one handling task."""
    method: str
    path: str
    query: str
    headers: httpx.Headers
    body: Union[AsyncIterable[bytes], BufferedBody, None] = None
    scheme: str = ""
    host: str = ""
    client_host: Optional[str] = None

    @property
    def url(self) -> str:
        target = self.path or "/"
        if self.query:
            target = f"{target}?{self.query}"
        return f"{self.scheme}://{self.host}{target}"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class SigningDirector:
    """
    Signs outbound requests for a single target.

    In strict mode a request that cannot be buffered or signed is rejected.
    Otherwise the failure is logged and the request continues, with an empty
    body or without authentication headers.

    Attributes:
        target: Endpoint every request is rewritten to
        credential_provider: Object with a fetch() returning AWSCredentials
        signer: SigV4 signer for the region and service
        strict: Whether signing and body failures reject the request
    """

    def __init__(
        self,
        target: TargetEndpoint,
        credential_provider,
        region: str,
        service: str = SERVICE_NAME,
        strict: bool = True,
        clock: Callable[[], datetime.datetime] = utcnow,
        metrics: Optional[MetricsEmitter] = None,
    ):
        self.target = target
        self.credential_provider = credential_provider
        self.signer = SigV4Auth(region=region, service=service)
        self.strict = strict
        self.clock = clock
        self.metrics = metrics

    def rewrite_destination(self, req: OutboundRequest) -> None:
        """Point the request at the target's scheme and authority."""
        req.scheme = self.target.scheme
        req.host = self.target.host
        req.headers["host"] = self.target.host

    async def buffer_body(self, req: OutboundRequest) -> bytes:
        """
        Read the request body fully and replace it with an owned buffer.

        Args:
            req: Outbound request whose body is consumed

        Returns:
            The body bytes (empty when there is no body)

        Raises:
            BodyReadError: If reading the body fails
        """
        if req.body is None:
            return b""
        if isinstance(req.body, BufferedBody):
            return req.body.data

        chunks = []
        try:
            async for chunk in req.body:
                chunks.append(chunk)
        except Exception as e:
            raise BodyReadError(f"error reading request body: {e}") from e

        data = b"".join(chunks)
        req.body = BufferedBody(data)
        if data:
            req.headers["content-length"] = str(len(data))
        return data

    @traced(name="sigv4.sign")
    def sign(
        self,
        req: OutboundRequest,
        payload: bytes,
        credentials: AWSCredentials,
        timestamp: datetime.datetime,
    ) -> SignedHeaders:
        """
        Compute the signature for a rewritten request.

        The request's query is replaced by its canonical form so the target
        sees exactly what was signed.

        Raises:
            SigningError: If the request was not rewritten or cannot be signed
        """
        if req.scheme != self.target.scheme or req.host != self.target.host:
            raise SigningError("Request destination was not rewritten to the target before signing")

        signed = self.signer.sign_request(
            method=req.method,
            path=req.path,
            query=req.query,
            headers=req.headers,
            payload=payload,
            credentials=credentials,
            timestamp=timestamp,
        )
        req.query = signed.canonical_query
        return signed

    def merge_headers(self, req: OutboundRequest, signed: SignedHeaders) -> None:
        """Overwrite the request's authentication headers with the signed set."""
        for name, value in signed.as_dict().items():
            req.headers[name] = value
        if not signed.security_token:
            req.headers.pop("x-amz-security-token", None)

    async def direct(self, req: OutboundRequest) -> Optional[SignedHeaders]:
        """
        Rewrite, buffer, sign and merge headers for one request.

        Args:
            req: Outbound request, modified in place

        Returns:
            The signed header set, or None when signing failed in lenient mode

        Raises:
            BodyReadError: If the body cannot be read in strict mode
            SigningError: If the request cannot be signed in strict mode
        """
        self.rewrite_destination(req)

        try:
            payload = await self.buffer_body(req)
        except BodyReadError as e:
            if self.metrics:
                self.metrics.record_body_read_failure(str(e))
            if self.strict:
                raise
            logger.error(f"{e}; signing an empty payload")
            payload = b""
            req.body = BufferedBody(payload)
            req.headers.pop("content-length", None)

        try:
            credentials = await asyncio.to_thread(self.credential_provider.fetch)
            signed = self.sign(req, payload, credentials, self.clock())
        except (CredentialsError, SigningError) as e:
            if self.metrics:
                self.metrics.record_signing_failure(type(e).__name__, str(e))
            if self.strict:
                if isinstance(e, SigningError):
                    raise
                raise SigningError(f"error signing: {e}") from e
            logger.error(f"error signing: {e}; forwarding request unsigned")
            return None

        self.merge_headers(req, signed)
        logger.debug(f"Signed {req.method} {req.path} with headers {signed.signed_headers}")
        return signed
