"""
Pytest configuration and fixtures for the signing proxy tests.

This module provides shared fixtures for testing the proxy, including the
upstream domain mock for local testing without a deployed domain.

Usage:
    # In your test file, fixtures are automatically available

    def test_something(proxy_client, upstream):
        response = proxy_client.get("/_search?q=test")
        assert upstream.last_request.headers["x-amz-date"]
"""

import datetime
import os

import pytest
from fastapi.testclient import TestClient

from signing_proxy.api_server import create_app
from signing_proxy.auth import AWSCredentials, StaticCredentialProvider
from signing_proxy.config import ProxyConfig, TargetEndpoint
from tests.mocks import UpstreamMock

# Example credentials from the AWS SigV4 documentation
EXAMPLE_ACCESS_KEY = "AKIDEXAMPLE"
EXAMPLE_SECRET_KEY = "wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY"

TARGET_HOST = "search-test.us-east-1.es.amazonaws.com"


# ============================================================================
# Credential Fixtures
# ============================================================================

@pytest.fixture
def credentials() -> AWSCredentials:
    """Long-term example credentials without a session token."""
    return AWSCredentials(access_key=EXAMPLE_ACCESS_KEY, secret_key=EXAMPLE_SECRET_KEY)


@pytest.fixture
def session_credentials() -> AWSCredentials:
    """Temporary example credentials with a session token."""
    return AWSCredentials(
        access_key="ASIAEXAMPLE",
        secret_key=EXAMPLE_SECRET_KEY,
        session_token="FwoGZXIvYXdzEBYaDEXAMPLETOKEN",
    )


@pytest.fixture
def credential_provider(credentials: AWSCredentials) -> StaticCredentialProvider:
    return StaticCredentialProvider(credentials)


@pytest.fixture
def signing_time() -> datetime.datetime:
    return datetime.datetime(2015, 8, 30, 12, 36, 0, tzinfo=datetime.timezone.utc)


# ============================================================================
# Proxy Fixtures
# ============================================================================

@pytest.fixture
def target() -> TargetEndpoint:
    return TargetEndpoint(scheme="https", host=TARGET_HOST)


@pytest.fixture
def proxy_config(target: TargetEndpoint) -> ProxyConfig:
    """
    Proxy configuration for tests.

    Override this fixture to customize flush interval or signing mode.

    Returns:
        ProxyConfig pointing at the mock target
    """
    return ProxyConfig(target=target, region="us-east-1")


@pytest.fixture
def upstream() -> UpstreamMock:
    """
    Create an upstream domain mock.

    Returns:
        UpstreamMock recording every forwarded request
    """
    return UpstreamMock()


@pytest.fixture
def proxy_app(proxy_config, credential_provider, upstream):
    return create_app(proxy_config, credential_provider=credential_provider, transport=upstream.transport)


@pytest.fixture
def proxy_client(proxy_app):
    """
    TestClient for the proxy application.

    Yields:
        TestClient with the lifespan running
    """
    with TestClient(proxy_app) as client:
        yield client


# ============================================================================
# Environment-based Fixtures
# ============================================================================

@pytest.fixture
def es_target_url() -> str:
    """
    Get a real domain URL from the environment.

    Returns:
        Domain URL from AWS_ES_TARGET environment variable

    Raises:
        pytest.skip: If AWS_ES_TARGET is not set
    """
    url = os.environ.get("AWS_ES_TARGET")
    if not url:
        pytest.skip("AWS_ES_TARGET not set - skipping integration tests")
    return url


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Skip integration tests unless --run-integration is passed.
    """
    if config.getoption("--run-integration", default=False):
        return

    skip_integration = pytest.mark.skip(
        reason="Integration tests skipped. Use --run-integration to run."
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires a deployed domain and AWS credentials)",
    )
