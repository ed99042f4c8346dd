"""Prometheus metrics for the API server and probe store."""

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

METRIC_PREFIX = "rhobs_synthetics_api"


class Metrics:
    """Process metrics held in a dedicated registry.

    Construct once at startup and pass to the components that record into it.
    Nothing is registered in the prometheus_client default registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.http_requests_total = Counter(
            f"{METRIC_PREFIX}_http_requests_total",
            "The total number of HTTP requests handled by the API.",
            ["code", "method"],
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            f"{METRIC_PREFIX}_http_request_duration_seconds",
            "A histogram of the request latencies.",
            ["method"],
            registry=self.registry,
        )
        self.http_requests_in_flight = Gauge(
            f"{METRIC_PREFIX}_http_requests_in_flight",
            "The number of HTTP requests currently being processed.",
            registry=self.registry,
        )
        self.probestore_request_duration = Histogram(
            f"{METRIC_PREFIX}_probestore_request_duration_seconds",
            "The latency of operations against the active probe store.",
            ["operation"],
            registry=self.registry,
        )
        self.probestore_errors_total = Counter(
            f"{METRIC_PREFIX}_probestore_errors_total",
            "The total number of errors encountered when interacting with the probe store.",
            ["operation"],
            registry=self.registry,
        )
        self.probes_total = Gauge(
            f"{METRIC_PREFIX}_probes_total",
            "The total number of probe configs.",
            ["state", "private"],
            registry=self.registry,
        )

    def record_http_request(self, method: str, code: int, duration_seconds: float) -> None:
        self.http_requests_total.labels(code=str(code), method=method).inc()
        self.http_request_duration.labels(method=method).observe(duration_seconds)

    def record_probestore_request(self, operation: str, start: float) -> None:
        """Observe the latency of a store operation started at ``start`` (time.monotonic)."""
        self.probestore_request_duration.labels(operation=operation).observe(time.monotonic() - start)

    def record_probestore_error(self, operation: str) -> None:
        self.probestore_errors_total.labels(operation=operation).inc()

    @contextmanager
    def track_probestore(
        self,
        operation: str,
        expected: tuple[type[Exception], ...] = (),
    ) -> Iterator[None]:
        """Time a store operation and count it as an error if it raises.

        Exceptions listed in ``expected`` are outcomes rather than failures
        (e.g. a missing probe) and are not counted.
        """
        start = time.monotonic()
        try:
            yield
        except expected:
            raise
        except Exception:
            self.record_probestore_error(operation)
            raise
        finally:
            self.record_probestore_request(operation, start)

    def set_probes_total(self, state: str, private: str, count: int) -> None:
        self.probes_total.labels(state=state, private=private).set(count)

    def render(self) -> tuple[bytes, str]:
        """Return the exposition body and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
