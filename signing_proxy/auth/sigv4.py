"""
AWS SigV4 request signing for the proxy.

This module implements the AWS Signature Version 4 algorithm used to sign
every request the proxy forwards to the target domain. It is pure: given the
same method, path, query, headers, payload, credentials, region, service and
timestamp it always produces the same signature.

Usage:
    from signing_proxy.auth import SigV4Auth, AWSCredentials

    auth = SigV4Auth(region="us-east-1", service="es")
    signed = auth.sign_request(
        method="GET",
        path="/_search",
        query="q=test",
        headers={"host": "search.example.com"},
        payload=b"",
        credentials=AWSCredentials(access_key="AKID...", secret_key="..."),
        timestamp=datetime.datetime(2015, 8, 30, 12, 36, tzinfo=datetime.timezone.utc),
    )
    request_headers.update(signed.as_dict())
"""

import datetime
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from urllib.parse import unquote_plus

from .credentials import AWSCredentials

logger = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"

# Service name of the Amazon Elasticsearch / OpenSearch backend family
SERVICE_NAME = "es"

AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"

_UNRESERVED = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~"
)

# Headers rewritten or appended to by intermediaries after signing
IGNORED_HEADERS = frozenset({
    "authorization",
    "user-agent",
    "x-amzn-trace-id",
    "expect",
    "x-forwarded-for",
})


class SigningError(Exception):
    """Raised when a request cannot be signed."""


@dataclass(frozen=True)
class SignedHeaders:
    """Headers produced by a signing operation, plus the intermediate values."""
    authorization: str
    amz_date: str
    signed_headers: str
    signature: str
    canonical_query: str
    canonical_request: str
    string_to_sign: str
    security_token: Optional[str] = None

    def as_dict(self) -> dict[str, str]:
        """Headers to merge into the outbound request."""
        headers = {
            "Authorization": self.authorization,
            "X-Amz-Date": self.amz_date,
        }
        if self.security_token:
            headers["X-Amz-Security-Token"] = self.security_token
        return headers

    def __repr__(self) -> str:
        return f"SignedHeaders(signed_headers={self.signed_headers!r}, amz_date={self.amz_date!r})"


def format_amz_date(timestamp: datetime.datetime) -> str:
    """Format a timestamp as an X-Amz-Date value (naive values are taken as UTC)."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(datetime.timezone.utc)
    return timestamp.strftime(AMZ_DATE_FORMAT)


def uri_encode(value: str, encode_slash: bool = True) -> str:
    """Percent-encode everything outside the RFC 3986 unreserved set."""
    result = []
    for byte in value.encode("utf-8"):
        ch = chr(byte)
        if ch in _UNRESERVED or (ch == "/" and not encode_slash):
            result.append(ch)
        else:
            result.append(f"%{byte:02X}")
    return "".join(result)


def canonical_uri(path: str) -> str:
    """
    Build the canonical URI from the path as it appears on the wire.

    The path is encoded once more on top of its existing percent-encoding,
    which is what non-S3 services expect.
    """
    if not path:
        return "/"
    return uri_encode(path.split("?", 1)[0], encode_slash=False)


def canonical_query_string(query: str) -> str:
    """
    Build the canonical query string from a raw query.

    Pairs containing a semicolon are dropped. Names and values are decoded,
    re-encoded with the unreserved set and sorted by name, then value.
    """
    query = query.strip()
    if not query:
        return ""

    params = []
    for piece in query.split("&"):
        if not piece:
            continue
        if ";" in piece:
            logger.debug(f"Dropping query parameter containing a semicolon: {piece!r}")
            continue
        name, _, value = piece.partition("=")
        params.append((uri_encode(unquote_plus(name)), uri_encode(unquote_plus(value))))

    params.sort()
    return "&".join(f"{name}={value}" for name, value in params)


def _header_items(headers: Any) -> Iterable[tuple[str, str]]:
    """Iterate (name, value) pairs from a multimap, mapping or pair list."""
    if hasattr(headers, "multi_items"):
        return headers.multi_items()
    if hasattr(headers, "items"):
        return headers.items()
    return headers


def canonical_header_map(headers: Any) -> dict[str, str]:
    """
    Group headers by lower-cased name into canonical values.

    Values are trimmed with inner whitespace runs collapsed; repeated names
    are joined with commas in their original order.
    """
    grouped: dict[str, list[str]] = {}
    for name, value in _header_items(headers):
        key = name.strip().lower()
        if key in IGNORED_HEADERS:
            continue
        grouped.setdefault(key, []).append(" ".join(str(value).split()))
    return {name: ",".join(values) for name, values in grouped.items()}


class SigV4Auth:
    """
    AWS Signature Version 4 signer.

    Credentials are passed per call so one signer instance serves every
    request for a region/service pair without holding secrets.

    Attributes:
        region: AWS region (e.g., "us-east-1")
        service: AWS service name (e.g., "es")
    """

    ALGORITHM = ALGORITHM

    def __init__(self, region: str, service: str = SERVICE_NAME):
        """
        Initialize SigV4Auth.

        Args:
            region: AWS region
            service: AWS service name
        """
        if not region:
            raise SigningError("A signing region is required")
        self.region = region
        self.service = service

    def _sign(self, key: bytes, msg: str) -> bytes:
        """Create HMAC-SHA256 signature."""
        return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()

    def _get_signature_key(self, secret_key: str, date_stamp: str) -> bytes:
        """
        Derive the signing key for SigV4.

        Args:
            secret_key: AWS secret access key
            date_stamp: Date in YYYYMMDD format

        Returns:
            Derived signing key
        """
        k_date = self._sign(f"AWS4{secret_key}".encode("utf-8"), date_stamp)
        k_region = self._sign(k_date, self.region)
        k_service = self._sign(k_region, self.service)
        k_signing = self._sign(k_service, "aws4_request")
        return k_signing

    def _hash_payload(self, payload: bytes) -> str:
        """Create SHA256 hash of the payload."""
        return hashlib.sha256(payload).hexdigest()

    def credential_scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/aws4_request"

    def _create_canonical_request(
        self,
        method: str,
        path: str,
        canonical_query: str,
        header_map: dict[str, str],
        signed_headers: str,
        payload_hash: str,
    ) -> str:
        """
        Create the canonical request string for SigV4.

        Args:
            method: HTTP method
            path: Request path as sent on the wire
            canonical_query: Canonical query string
            header_map: Canonical header values keyed by lower-cased name
            signed_headers: Semicolon-separated list of signed header names
            payload_hash: SHA256 hash of the request payload

        Returns:
            Canonical request string
        """
        canonical_headers = "".join(
            f"{name}:{header_map[name]}\n" for name in signed_headers.split(";")
        )

        return "\n".join([
            method.upper(),
            canonical_uri(path),
            canonical_query,
            canonical_headers,
            signed_headers,
            payload_hash,
        ])

    def _create_string_to_sign(
        self,
        amz_date: str,
        date_stamp: str,
        canonical_request: str,
    ) -> str:
        """
        Create the string to sign for SigV4.

        Args:
            amz_date: Timestamp in ISO 8601 basic format
            date_stamp: Date in YYYYMMDD format
            canonical_request: The canonical request string

        Returns:
            String to sign
        """
        return "\n".join([
            self.ALGORITHM,
            amz_date,
            self.credential_scope(date_stamp),
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ])

    def sign_request(
        self,
        method: str,
        path: str,
        query: str,
        headers: Any,
        payload: bytes,
        credentials: AWSCredentials,
        timestamp: datetime.datetime,
    ) -> SignedHeaders:
        """
        Sign an HTTP request using AWS SigV4.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: Request path as sent on the wire (percent-encoded)
            query: Raw query string without the leading "?"
            headers: Request headers; must already carry the target host
            payload: Exact request body bytes (empty for no body)
            credentials: Credential snapshot to sign with
            timestamp: Signing time

        Returns:
            SignedHeaders holding Authorization, X-Amz-Date and the optional
            X-Amz-Security-Token

        Raises:
            SigningError: If the request or credentials cannot be signed
        """
        if not credentials.access_key or not credentials.secret_key:
            raise SigningError("Credentials are missing an access key or secret key")

        header_map = canonical_header_map(headers)
        if not header_map.get("host"):
            raise SigningError("Request has no host header to sign")

        amz_date = format_amz_date(timestamp)
        date_stamp = amz_date[:8]

        header_map["x-amz-date"] = amz_date
        header_map.pop("x-amz-security-token", None)
        if credentials.session_token:
            header_map["x-amz-security-token"] = credentials.session_token

        signed_headers = ";".join(sorted(header_map))
        canonical_query = canonical_query_string(query)

        canonical_request = self._create_canonical_request(
            method=method,
            path=path,
            canonical_query=canonical_query,
            header_map=header_map,
            signed_headers=signed_headers,
            payload_hash=self._hash_payload(payload),
        )

        string_to_sign = self._create_string_to_sign(
            amz_date=amz_date,
            date_stamp=date_stamp,
            canonical_request=canonical_request,
        )

        signing_key = self._get_signature_key(credentials.secret_key, date_stamp)
        signature = hmac.new(
            signing_key,
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        authorization = (
            f"{self.ALGORITHM} "
            f"Credential={credentials.access_key}/{self.credential_scope(date_stamp)}, "
            f"SignedHeaders={signed_headers}, "
            f"Signature={signature}"
        )

        return SignedHeaders(
            authorization=authorization,
            amz_date=amz_date,
            signed_headers=signed_headers,
            signature=signature,
            canonical_query=canonical_query,
            canonical_request=canonical_request,
            string_to_sign=string_to_sign,
            security_token=credentials.session_token or None,
        )


def compute_signature(
    method: str,
    path: str,
    query: str,
    headers: Any,
    payload: bytes,
    credentials: AWSCredentials,
    region: str,
    service: str = SERVICE_NAME,
    timestamp: Optional[datetime.datetime] = None,
) -> SignedHeaders:
    """
    Convenience function to sign a single request.

    Args:
        method: HTTP method
        path: Request path as sent on the wire
        query: Raw query string
        headers: Request headers including host
        payload: Request body bytes
        credentials: Credential snapshot
        region: AWS region
        service: AWS service name
        timestamp: Signing time (defaults to now, UTC)

    Returns:
        SignedHeaders for the request
    """
    if timestamp is None:
        timestamp = datetime.datetime.now(datetime.timezone.utc)
    return SigV4Auth(region=region, service=service).sign_request(
        method=method,
        path=path,
        query=query,
        headers=headers,
        payload=payload,
        credentials=credentials,
        timestamp=timestamp,
    )
