"""
CloudWatch metrics for the AWS signing proxy.

Metrics are written to stdout as Embedded Metric Format (EMF) documents, one
JSON line per record. The CloudWatch agent (or Lambda/ECS log routing)
extracts them without any PutMetricData calls from the proxy.

Recorded per proxied request:
- ProxyRequestCount, ProxyRequestLatency and ProxyRequestSuccess/ProxyRequestError

Recorded per failure:
- SigningFailure, BodyReadFailure, UpstreamError
"""

import dataclasses
import json
import os
import time
from enum import Enum
from typing import Any, Mapping, Optional

NAMESPACE = "AwsSigningProxy"

# Free-form values are cut to keep log lines bounded
MAX_MESSAGE_LENGTH = 200
MAX_DIMENSION_LENGTH = 50


class MetricUnit(str, Enum):
    """CloudWatch metric units."""
    COUNT = "Count"
    MILLISECONDS = "Milliseconds"


class ProxyMetricName(str, Enum):
    """Metric names for the signing proxy."""
    PROXY_REQUEST_COUNT = "ProxyRequestCount"
    PROXY_REQUEST_LATENCY = "ProxyRequestLatency"
    PROXY_REQUEST_SUCCESS = "ProxyRequestSuccess"
    PROXY_REQUEST_ERROR = "ProxyRequestError"

    SIGNING_FAILURE = "SigningFailure"
    BODY_READ_FAILURE = "BodyReadFailure"
    UPSTREAM_ERROR = "UpstreamError"


@dataclasses.dataclass(frozen=True)
class MetricDimensions:
    """Dimension set attached to a metric record; unset values are omitted."""
    environment: str = dataclasses.field(
        default_factory=lambda: os.getenv("ENVIRONMENT", "development")
    )
    target: Optional[str] = None
    method: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict[str, str]:
        names = {
            "Environment": self.environment,
            "Target": self.target,
            "Method": self.method,
            "ErrorType": self.error_type,
        }
        return {name: value for name, value in names.items() if value}


def emf_document(
    metrics: Mapping[ProxyMetricName, tuple[float, MetricUnit]],
    dimensions: MetricDimensions,
    properties: Optional[Mapping[str, Any]] = None,
    timestamp_ms: Optional[int] = None,
) -> dict[str, Any]:
    """
    Build an EMF document.

    Args:
        metrics: Metric name to (value, unit)
        dimensions: Dimensions shared by every metric in the document
        properties: Extra searchable fields that are not metrics
        timestamp_ms: Epoch milliseconds (defaults to now)

    Returns:
        Dictionary ready to be serialized as one log line
    """
    dimension_values = dimensions.to_dict()
    document: dict[str, Any] = {
        "_aws": {
            "Timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
            "CloudWatchMetrics": [{
                "Namespace": NAMESPACE,
                "Dimensions": [list(dimension_values)],
                "Metrics": [{"Name": name.value, "Unit": unit.value} for name, (_, unit) in metrics.items()],
            }],
        },
    }
    document.update(dimension_values)
    document.update({name.value: value for name, (value, _) in metrics.items()})
    if properties:
        document.update(properties)
    return document


class MetricsEmitter:
    """
    Writes proxy metrics as EMF lines on stdout.

    Attributes:
        service_name: Value of the "service" property on every record
        target: Target host, used as the Target dimension
    """

    def __init__(self, service_name: str = "aws-signing-proxy", target: Optional[str] = None):
        self.service_name = service_name
        self.target = target

    def dimensions(self, **values: Optional[str]) -> MetricDimensions:
        return MetricDimensions(target=self.target, **values)

    def emit(
        self,
        metrics: Mapping[ProxyMetricName, tuple[float, MetricUnit]],
        dimensions: Optional[MetricDimensions] = None,
        **properties: Any,
    ) -> None:
        """Write one EMF record holding all the given metrics."""
        document = emf_document(
            metrics,
            dimensions or self.dimensions(),
            {"service": self.service_name, **properties},
        )
        print(json.dumps(document), flush=True)

    def record_request(
        self,
        method: str,
        status_code: int,
        latency_ms: float,
        path: Optional[str] = None,
    ) -> None:
        """
        Record a proxied request.

        Responses below 500 count as successes, so a 404 from the target is
        still a successful proxy round trip.

        Args:
            method: HTTP method
            status_code: Status returned to the client
            latency_ms: Time until the response started, in milliseconds
            path: Request path
        """
        outcome = (
            ProxyMetricName.PROXY_REQUEST_SUCCESS
            if status_code < 500
            else ProxyMetricName.PROXY_REQUEST_ERROR
        )
        properties: dict[str, Any] = {"statusCode": status_code}
        if path:
            properties["path"] = path[:MAX_MESSAGE_LENGTH]

        self.emit(
            {
                ProxyMetricName.PROXY_REQUEST_COUNT: (1, MetricUnit.COUNT),
                ProxyMetricName.PROXY_REQUEST_LATENCY: (latency_ms, MetricUnit.MILLISECONDS),
                outcome: (1, MetricUnit.COUNT),
            },
            self.dimensions(method=method),
            **properties,
        )

    def _record_failure(self, name: ProxyMetricName, error_type: Optional[str], message: str) -> None:
        error_type = error_type[:MAX_DIMENSION_LENGTH] if error_type else None
        self.emit(
            {name: (1, MetricUnit.COUNT)},
            self.dimensions(error_type=error_type),
            errorMessage=message[:MAX_MESSAGE_LENGTH],
        )

    def record_signing_failure(self, error_type: str, error_message: str) -> None:
        """Record a request that could not be signed."""
        self._record_failure(ProxyMetricName.SIGNING_FAILURE, error_type, error_message)

    def record_body_read_failure(self, error_message: str) -> None:
        """Record a request whose body could not be read."""
        self._record_failure(ProxyMetricName.BODY_READ_FAILURE, None, error_message)

    def record_upstream_error(self, error_type: str, error_message: str) -> None:
        """Record a failure reaching or reading from the target."""
        self._record_failure(ProxyMetricName.UPSTREAM_ERROR, error_type, error_message)
