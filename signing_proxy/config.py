"""
Configuration for the AWS signing proxy.

Every option can come from a command-line flag, an environment variable, a
YAML config file or a built-in default, in that order of precedence. A `.env`
file in the working directory is loaded into the environment first.

The config file is `aws-signing-proxy.yaml` (or `.yml`), searched in `/etc/`
and then the working directory, unless `--config` names one explicitly.

Usage:
    from signing_proxy.config import load_config

    config = load_config(["--target", "https://search-domain.us-east-1.es.amazonaws.com"])
"""

import argparse
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import boto3
import yaml
from botocore.exceptions import BotoCoreError
from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

CONFIG_NAME = "aws-signing-proxy"
CONFIG_PATHS = ("/etc/", ".")
CONFIG_EXTENSIONS = (".yaml", ".yml")

DEFAULT_REGION = "us-west-2"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(Exception):
    """Raised when the proxy configuration is missing or invalid."""


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    return int(str(value).strip())


def _parse_seconds(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"not a number of seconds: {value!r}")
    return float(str(value).strip())


def _parse_str(value: Any) -> str:
    return "" if value is None else str(value).strip()


@dataclass(frozen=True)
class Option:
    """A single configuration option and where it can be set."""
    name: str
    env: Optional[str]
    parse: Callable[[Any], Any]
    default: Any
    help: str

    @property
    def dest(self) -> str:
        return self.name.replace("-", "_")


OPTIONS: tuple[Option, ...] = (
    Option("target", "AWS_ES_TARGET", _parse_str, "", "target url to proxy to"),
    Option("port", "PROXY_PORT", _parse_int, 8080, "listening port for proxy"),
    Option("listen-address", "PROXY_LISTEN_ADDRESS", _parse_str, "", "local address to listen on"),
    Option("region", "AWS_REGION", _parse_str, "", "AWS region for credentials"),
    Option(
        "flush-interval", "PROXY_FLUSH_INTERVAL", _parse_seconds, 0,
        "flush interval in seconds while copying the response body to the client",
    ),
    Option(
        "idle-conn-timeout", "PROXY_IDLE_CONN_TIMEOUT", _parse_seconds, 90,
        "seconds an idle keep-alive connection stays open; zero means no limit",
    ),
    Option(
        "dial-timeout", "PROXY_DIAL_TIMEOUT", _parse_seconds, 30,
        "maximum seconds to wait for a connection to the target",
    ),
    Option(
        "dial-keep-alive", "PROXY_DIAL_KEEP_ALIVE", _parse_seconds, 30,
        "TCP keep-alive interval in seconds for target connections",
    ),
    Option("profile", "AWS_PROFILE", _parse_str, "", "AWS shared credentials profile"),
    Option(
        "strict-signing", "PROXY_STRICT_SIGNING", _parse_bool, True,
        "reject requests that cannot be signed instead of forwarding them unsigned",
    ),
    Option("log-level", "LOG_LEVEL", _parse_str, "INFO", "logging level"),
    Option("emit-metrics", "PROXY_EMIT_METRICS", _parse_bool, False, "emit CloudWatch EMF metrics"),
    Option("otel-endpoint", "OTEL_EXPORTER_OTLP_ENDPOINT", _parse_str, "", "OTLP trace exporter endpoint"),
    Option(
        "otel-console-export", "OTEL_CONSOLE_EXPORT", _parse_bool, False,
        "print trace spans to the console",
    ),
)

OPTION_NAMES = frozenset(option.name for option in OPTIONS)


@dataclass(frozen=True)
class TargetEndpoint:
    """Scheme and authority of the upstream domain."""
    scheme: str
    host: str

    @classmethod
    def from_url(cls, url: str) -> "TargetEndpoint":
        """
        Parse a target URL.

        Args:
            url: Absolute http(s) URL of the target

        Returns:
            TargetEndpoint for the URL

        Raises:
            ConfigurationError: If the URL is not an absolute http(s) URL
        """
        try:
            parsed = urlsplit(url.strip())
            # Validates the port component
            parsed.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid target URL {url!r}: {e}") from e

        scheme = parsed.scheme.lower()
        host = parsed.netloc.rpartition("@")[2]
        if scheme not in ("http", "https") or not host:
            raise ConfigurationError(
                f"Invalid target URL {url!r}: expected an absolute http:// or https:// URL"
            )
        if parsed.path not in ("", "/") or parsed.query:
            logger.warning(f"Ignoring path and query of target URL {url!r}")
        return cls(scheme=scheme, host=host)

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}"


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the signing proxy."""

    target: TargetEndpoint
    port: int = 8080
    listen_address: str = ""
    region: str = DEFAULT_REGION

    # Seconds; zero buffers, negative flushes every chunk
    flush_interval: float = 0
    idle_conn_timeout: float = 90
    dial_timeout: float = 30
    dial_keep_alive: float = 30

    profile: Optional[str] = None
    strict_signing: bool = True

    log_level: str = "INFO"
    emit_metrics: bool = False

    # OpenTelemetry configuration
    otel_endpoint: str = ""
    otel_console_export: bool = False

    def __post_init__(self):
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Port {self.port} is out of range")
        for name in ("idle_conn_timeout", "dial_timeout", "dial_keep_alive"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name.replace('_', '-')} must not be negative")
        if not self.region:
            raise ConfigurationError("A region is required")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level {self.log_level!r}")

    @property
    def listen_string(self) -> str:
        return f"{self.listen_address}:{self.port}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        """Load configuration from environment variables only."""
        return resolve_config({}, os.environ if environ is None else environ, {})


def build_arg_parser() -> argparse.ArgumentParser:
    """Command-line flags; unset flags stay None so lower layers can apply."""
    parser = argparse.ArgumentParser(
        prog="aws-signing-proxy",
        description="Reverse proxy that signs requests to AWS Elasticsearch/OpenSearch with SigV4",
    )
    parser.add_argument("--config", default=None, help="path to a YAML config file")
    for option in OPTIONS:
        parser.add_argument(f"--{option.name}", dest=option.dest, default=None, help=option.help)
    return parser


def find_config_file() -> Optional[str]:
    """Return the first config file found on the search path."""
    for directory in CONFIG_PATHS:
        for extension in CONFIG_EXTENSIONS:
            path = os.path.join(directory, CONFIG_NAME + extension)
            if os.path.isfile(path):
                return path
    return None


def read_config_file(path: str) -> dict[str, Any]:
    """
    Read option values from a YAML config file.

    Args:
        path: Path to the YAML file

    Returns:
        Mapping of option name to raw value

    Raises:
        ConfigurationError: If the file cannot be read or holds unknown keys
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not decode config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    values = {}
    for key, value in data.items():
        name = str(key).replace("_", "-").lower()
        if name not in OPTION_NAMES:
            raise ConfigurationError(f"Unknown key {key!r} in config file {path}")
        values[name] = value
    logger.debug(f"Loaded config file {path}")
    return values


def default_region(profile: Optional[str]) -> str:
    """Region configured for the AWS profile, falling back to us-west-2."""
    try:
        region = boto3.Session(profile_name=profile or None).region_name
    except BotoCoreError as e:
        logger.warning(f"Could not read region from AWS config: {e}")
        region = None
    return region or DEFAULT_REGION


def resolve_config(
    flags: Mapping[str, Any],
    environ: Mapping[str, str],
    file_values: Mapping[str, Any],
) -> ProxyConfig:
    """
    Merge option layers into a ProxyConfig.

    Args:
        flags: Explicit command-line values keyed by option name
        environ: Environment variables
        file_values: Values from the config file keyed by option name

    Returns:
        Validated ProxyConfig

    Raises:
        ConfigurationError: If a value is invalid or the target is missing
    """
    values: dict[str, Any] = {}
    for option in OPTIONS:
        if flags.get(option.name) is not None:
            raw, source = flags[option.name], f"--{option.name}"
        elif option.env and environ.get(option.env):
            raw, source = environ[option.env], option.env
        elif file_values.get(option.name) is not None:
            raw, source = file_values[option.name], "config file"
        else:
            values[option.dest] = option.default
            continue

        try:
            values[option.dest] = option.parse(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {option.name} from {source}: {e}") from e

    if not values["target"]:
        raise ConfigurationError(
            "No proxy target set. Please set this either in the config file or using the --target flag"
        )

    profile = values["profile"] or None
    return ProxyConfig(
        target=TargetEndpoint.from_url(values["target"]),
        port=values["port"],
        listen_address=values["listen_address"],
        region=values["region"] or default_region(profile),
        flush_interval=values["flush_interval"],
        idle_conn_timeout=values["idle_conn_timeout"],
        dial_timeout=values["dial_timeout"],
        dial_keep_alive=values["dial_keep_alive"],
        profile=profile,
        strict_signing=values["strict_signing"],
        log_level=values["log_level"].upper(),
        emit_metrics=values["emit_metrics"],
        otel_endpoint=values["otel_endpoint"],
        otel_console_export=values["otel_console_export"],
    )


def load_config(argv: Optional[Sequence[str]] = None) -> ProxyConfig:
    """
    Resolve configuration from flags, environment, config file and defaults.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Validated ProxyConfig

    Raises:
        ConfigurationError: If the configuration is missing or invalid
    """
    args = build_arg_parser().parse_args(argv)
    load_dotenv(find_dotenv(usecwd=True))

    path = args.config or find_config_file()
    file_values = read_config_file(path) if path else {}

    flags = {option.name: getattr(args, option.dest) for option in OPTIONS}
    return resolve_config(flags, os.environ, file_values)
