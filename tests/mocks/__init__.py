"""
Test mocks for the signing proxy test suite.

This module provides mock implementations for external dependencies,
enabling local testing without a deployed domain or AWS credentials.

Available Mocks:
- UpstreamMock: Mock target domain plugged into httpx as a MockTransport
- MockResponse: Canned upstream response
- RecordedRequest: Request as received by the mock

Usage:
    from tests.mocks import UpstreamMock

    upstream = UpstreamMock()
    upstream.add_response("/_cluster/health", json={"status": "green"})
"""

from .upstream_mock import (
    MockResponse,
    RecordedRequest,
    UpstreamMock,
)

__all__ = [
    "MockResponse",
    "RecordedRequest",
    "UpstreamMock",
]
