"""AWS signing proxy - reverse proxy that signs requests with AWS SigV4."""

__version__ = "0.1.0"

from .auth import (
    AWSCredentials,
    CredentialProvider,
    CredentialsError,
    SignedHeaders,
    SigningError,
    SigV4Auth,
    StaticCredentialProvider,
    compute_signature,
)
from .config import ConfigurationError, ProxyConfig, TargetEndpoint, load_config
from .director import BodyReadError, BufferedBody, OutboundRequest, SigningDirector
from .engine import ProxyEngine
from .metrics import MetricsEmitter, ProxyMetricName
from .transport import UpstreamError, create_client

__all__ = [
    # Signing
    "AWSCredentials",
    "CredentialProvider",
    "CredentialsError",
    "SignedHeaders",
    "SigningError",
    "SigV4Auth",
    "StaticCredentialProvider",
    "compute_signature",
    # Configuration
    "ConfigurationError",
    "ProxyConfig",
    "TargetEndpoint",
    "load_config",
    # Proxy
    "BodyReadError",
    "BufferedBody",
    "OutboundRequest",
    "ProxyEngine",
    "SigningDirector",
    "UpstreamError",
    "create_client",
    # Metrics
    "MetricsEmitter",
    "ProxyMetricName",
]
