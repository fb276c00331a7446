"""
AWS credential resolution for the signing proxy.

Credentials are resolved through an ordered chain of botocore providers:
environment variables, the shared credentials file, the container role
endpoint and finally EC2 instance metadata. The first provider that yields
credentials wins and is cached; refreshable credentials refresh themselves
inside botocore.

Usage:
    from signing_proxy.auth import CredentialProvider

    provider = CredentialProvider(profile_name="search")
    creds = provider.fetch()
"""

import datetime
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Optional, Sequence

from botocore.credentials import (
    ContainerProvider,
    Credentials,
    EnvProvider,
    InstanceMetadataProvider,
    SharedCredentialProvider,
)
from botocore.exceptions import BotoCoreError
from botocore.utils import InstanceMetadataFetcher

logger = logging.getLogger(__name__)

# Instance metadata is the last resort; keep the probe short off EC2
IMDS_TIMEOUT = 1
IMDS_ATTEMPTS = 1


class CredentialsError(Exception):
    """Raised when no credential source yields usable credentials."""


@dataclass(frozen=True)
class AWSCredentials:
    """AWS credentials for signing requests."""
    access_key: str
    secret_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    expiration: Optional[datetime.datetime] = None


def shared_credentials_path() -> str:
    """Location of the shared credentials file."""
    return os.path.expanduser(
        os.getenv("AWS_SHARED_CREDENTIALS_FILE", os.path.join("~", ".aws", "credentials"))
    )


def default_providers(profile_name: Optional[str] = None) -> list:
    """
    Build the default botocore provider chain.

    An explicit profile skips the environment provider, the same way
    botocore's own resolver does.

    Args:
        profile_name: Shared credentials profile (defaults to "default")

    Returns:
        Ordered list of botocore credential providers
    """
    providers = []
    if not profile_name:
        providers.append(EnvProvider())
    providers.extend([
        SharedCredentialProvider(
            creds_filename=shared_credentials_path(),
            profile_name=profile_name or "default",
        ),
        ContainerProvider(),
        InstanceMetadataProvider(
            iam_role_fetcher=InstanceMetadataFetcher(
                timeout=IMDS_TIMEOUT,
                num_attempts=IMDS_ATTEMPTS,
            )
        ),
    ])
    return providers


class CredentialProvider:
    """
    Thread-safe credential provider backed by a botocore provider chain.

    Attributes:
        profile_name: Shared credentials profile, if any
    """

    def __init__(
        self,
        profile_name: Optional[str] = None,
        providers: Optional[Sequence] = None,
    ):
        """
        Initialize the provider.

        Args:
            profile_name: Shared credentials profile
            providers: Explicit botocore providers, in priority order
        """
        self.profile_name = profile_name
        self._providers = list(providers) if providers is not None else default_providers(profile_name)
        self._lock = threading.Lock()
        self._credentials: Optional[Credentials] = None

    def _resolve(self) -> Credentials:
        for provider in self._providers:
            method = getattr(provider, "METHOD", type(provider).__name__)
            try:
                creds = provider.load()
            except BotoCoreError as e:
                logger.warning(f"Credential provider {method} failed: {e}")
                continue
            if creds is not None:
                logger.info(f"Using AWS credentials from {method}")
                return creds
        raise CredentialsError(
            "No AWS credentials found in the environment, shared credentials file, "
            "container role endpoint or instance metadata"
        )

    def fetch(self) -> AWSCredentials:
        """
        Return a snapshot of the current credentials.

        Returns:
            AWSCredentials snapshot

        Raises:
            CredentialsError: If no provider yields credentials
        """
        with self._lock:
            if self._credentials is None:
                self._credentials = self._resolve()
            creds = self._credentials

        try:
            frozen = creds.get_frozen_credentials()
        except BotoCoreError as e:
            raise CredentialsError(f"Failed to refresh AWS credentials: {e}") from e

        if not frozen.access_key or not frozen.secret_key:
            raise CredentialsError("Resolved AWS credentials are incomplete")

        return AWSCredentials(
            access_key=frozen.access_key,
            secret_key=frozen.secret_key,
            session_token=frozen.token,
        )


class StaticCredentialProvider:
    """Credential provider returning a fixed snapshot."""

    def __init__(self, credentials: AWSCredentials):
        self._credentials = credentials

    def fetch(self) -> AWSCredentials:
        return self._credentials

