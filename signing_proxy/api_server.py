"""
HTTP server for the AWS signing proxy.

Every request, whatever its method or path, is handed to the proxy engine,
signed and forwarded to the target domain.

Usage:
    # Command line
    aws-signing-proxy --target https://search-domain.us-east-1.es.amazonaws.com

    # Environment
    AWS_ES_TARGET=https://search-domain.us-east-1.es.amazonaws.com python -m signing_proxy.api_server
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
import uvicorn
from fastapi import FastAPI

from . import __version__
from .auth import CredentialProvider, CredentialsError
from .config import ConfigurationError, ProxyConfig, load_config
from .engine import ProxyEngine
from .metrics import MetricsEmitter
from .tracing import init_tracing, shutdown_tracing

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure logging to stdout for CloudWatch."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def create_app(
    config: ProxyConfig,
    credential_provider=None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    metrics: Optional[MetricsEmitter] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        config: Proxy configuration
        credential_provider: Credential source (defaults to the AWS provider chain)
        transport: Optional outbound transport override
        metrics: Optional metrics emitter (defaults to one when emit_metrics is set)

    Returns:
        FastAPI application with a single catch-all route
    """
    if credential_provider is None:
        credential_provider = CredentialProvider(profile_name=config.profile)
    if metrics is None and config.emit_metrics:
        metrics = MetricsEmitter(target=config.target.host)

    engine = ProxyEngine.from_config(
        config,
        credential_provider,
        transport=transport,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await engine.aclose()

    app = FastAPI(
        title="AWS Signing Proxy",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # An ASGI endpoint accepts every method
    app.add_route("/{full_path:path}", engine, include_in_schema=False)
    return app


def serve(app: FastAPI, config: ProxyConfig) -> None:
    """Run the application with uvicorn until interrupted."""
    host = config.listen_address or "0.0.0.0"
    logger.info(f"Listening on {config.listen_string}")
    uvicorn.run(
        app,
        host=host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=False,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Console entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Process exit status
    """
    configure_logging()

    try:
        config = load_config(argv)
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    configure_logging(config.log_level)
    logger.info(f"Proxying to {config.target.url} (region {config.region})")

    # Fail before listening when no credential source is available
    credential_provider = CredentialProvider(profile_name=config.profile)
    try:
        credential_provider.fetch()
    except CredentialsError as e:
        logger.error(str(e))
        return 1

    if config.otel_endpoint or config.otel_console_export:
        init_tracing(
            otlp_endpoint=config.otel_endpoint or None,
            enable_console_export=config.otel_console_export,
        )

    app = create_app(config, credential_provider=credential_provider)
    try:
        serve(app, config)
    finally:
        shutdown_tracing()
    return 0


if __name__ == "__main__":
    sys.exit(main())
