"""
Authentication utilities for the signing proxy.

This module provides AWS SigV4 signing and credential resolution for requests
forwarded to the target domain.
"""

from .credentials import (
    AWSCredentials,
    CredentialProvider,
    CredentialsError,
    StaticCredentialProvider,
)
from .sigv4 import (
    SERVICE_NAME,
    SignedHeaders,
    SigningError,
    SigV4Auth,
    compute_signature,
)

__all__ = [
    "AWSCredentials",
    "CredentialProvider",
    "CredentialsError",
    "SERVICE_NAME",
    "SignedHeaders",
    "SigningError",
    "SigV4Auth",
    "StaticCredentialProvider",
    "compute_signature",
]
