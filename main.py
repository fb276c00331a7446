"""Entry point for container deployment."""
import logging
import os
import sys

from signing_proxy.api_server import configure_logging, main

# Configure logging to stdout for CloudWatch - do this FIRST
configure_logging()
logger = logging.getLogger(__name__)

if __name__ == "__main__":
    logger.info("aws-signing-proxy container starting...")
    logger.info(f"Python version: {sys.version}")
    logger.info(f"Working directory: {os.getcwd()}")
    sys.stdout.flush()

    sys.exit(main())
