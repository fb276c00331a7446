"""
Outbound connection handling for the signing proxy.

Builds the shared httpx client used to reach the target domain. Connection
behavior (dial timeout, TCP keep-alive, idle pruning, pool ceiling) is fixed
for the life of the process and independent of any single request.
"""

import logging
import socket
import urllib.request
from typing import Optional

import httpx

from .config import ProxyConfig, TargetEndpoint

logger = logging.getLogger(__name__)

# Not user-configurable
TLS_HANDSHAKE_TIMEOUT = 10.0
MAX_IDLE_CONNECTIONS = 100

# httpx adds these to every request unless they are removed from the client
_CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "connection", "user-agent")


class UpstreamError(Exception):
    """Raised when the target cannot be reached or read from."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def keepalive_socket_options(interval: float) -> list[tuple[int, int, int]]:
    """
    Socket options enabling TCP keep-alive probes.

    Args:
        interval: Seconds between probes; zero or negative disables keep-alive

    Returns:
        List of (level, option, value) tuples for the platform
    """
    if interval <= 0:
        return []

    seconds = max(1, int(interval))
    options = [(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)]
    if hasattr(socket, "TCP_KEEPIDLE"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, seconds))
    elif hasattr(socket, "TCP_KEEPALIVE"):
        # macOS names the idle option differently
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, seconds))
    if hasattr(socket, "TCP_KEEPINTVL"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, seconds))
    return options


def environment_proxy(target: TargetEndpoint) -> Optional[str]:
    """
    Proxy URL from HTTP_PROXY/HTTPS_PROXY for the target, honoring NO_PROXY.

    httpx only reads these variables when it builds its own transport, so the
    lookup is done once here for the single target.
    """
    proxy = urllib.request.getproxies_environment().get(target.scheme)
    if not proxy or urllib.request.proxy_bypass_environment(target.host):
        return None
    return proxy


def build_limits(config: ProxyConfig) -> httpx.Limits:
    """Pool limits: a fixed idle ceiling and the configured idle expiry."""
    return httpx.Limits(
        max_connections=None,
        max_keepalive_connections=MAX_IDLE_CONNECTIONS,
        keepalive_expiry=config.idle_conn_timeout or None,
    )


def build_timeout(config: ProxyConfig) -> httpx.Timeout:
    """
    Request timeouts.

    httpcore applies the connect timeout to the TCP dial and the TLS
    handshake together, so the dial timeout bounds both. A zero dial timeout
    leaves the dial to the OS but still bounds the handshake. Reads and writes
    are unbounded so slow queries are not cut off.
    """
    connect = config.dial_timeout or None
    if connect is None and config.target.scheme == "https":
        connect = TLS_HANDSHAKE_TIMEOUT
    return httpx.Timeout(connect=connect, read=None, write=None, pool=None)


def create_transport(config: ProxyConfig) -> httpx.AsyncHTTPTransport:
    """Build the connection-pooling transport for the target."""
    return httpx.AsyncHTTPTransport(
        limits=build_limits(config),
        proxy=environment_proxy(config.target),
        socket_options=keepalive_socket_options(config.dial_keep_alive),
        trust_env=True,
    )


def create_client(
    config: ProxyConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Build the shared outbound client.

    Args:
        config: Proxy configuration
        transport: Optional transport override (tests mount a MockTransport)

    Returns:
        httpx.AsyncClient that never follows redirects
    """
    client = httpx.AsyncClient(
        transport=transport or create_transport(config),
        timeout=build_timeout(config),
        follow_redirects=False,
        trust_env=True,
    )
    for name in _CLIENT_DEFAULT_HEADERS:
        client.headers.pop(name, None)

    logger.info(
        f"Outbound transport: dial_timeout={config.dial_timeout}s "
        f"keep_alive={config.dial_keep_alive}s idle_timeout={config.idle_conn_timeout}s "
        f"max_idle={MAX_IDLE_CONNECTIONS}"
    )
    return client
