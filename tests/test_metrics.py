"""Tests for the metrics module."""

import pytest
from prometheus_client import CollectorRegistry

from synthetics_api.metrics import Metrics
from synthetics_api.store import ProbeNotFoundError, ProbeStoreError


class TestMetrics:
    """Tests for Metrics class."""

    def test_uses_private_registry(self) -> None:
        """Two instances do not collide on metric names."""
        first = Metrics()
        second = Metrics()

        assert first.registry is not second.registry

    def test_accepts_registry(self) -> None:
        """A given registry is used as-is."""
        registry = CollectorRegistry()

        assert Metrics(registry).registry is registry

    def test_record_http_request(self) -> None:
        """Requests are counted by code and method and timed by method."""
        metrics = Metrics()

        metrics.record_http_request("GET", 200, 0.01)
        metrics.record_http_request("GET", 200, 0.02)
        metrics.record_http_request("POST", 409, 0.01)

        get = metrics.registry.get_sample_value
        assert get("rhobs_synthetics_api_http_requests_total", {"code": "200", "method": "GET"}) == 2.0
        assert get("rhobs_synthetics_api_http_requests_total", {"code": "409", "method": "POST"}) == 1.0
        assert get("rhobs_synthetics_api_http_request_duration_seconds_count", {"method": "GET"}) == 2.0

    def test_set_probes_total(self) -> None:
        """The probes gauge is labelled by state and private."""
        metrics = Metrics()

        metrics.set_probes_total("active", "true", 3)

        value = metrics.registry.get_sample_value("rhobs_synthetics_api_probes_total", {"state": "active", "private": "true"})
        assert value == 3.0

    def test_render(self) -> None:
        """render returns exposition text and its content type."""
        metrics = Metrics()
        metrics.set_probes_total("pending", "false", 1)

        body, content_type = metrics.render()

        assert content_type.startswith("text/plain")
        assert b"rhobs_synthetics_api_probes_total" in body
        value = metrics.registry.get_sample_value(
            "rhobs_synthetics_api_probes_total", {"state": "pending", "private": "false"}
        )
        assert value == 1.0


class TestTrackProbestore:
    """Tests for Metrics.track_probestore."""

    def test_times_successful_calls(self) -> None:
        """Successful calls are timed and not counted as errors."""
        metrics = Metrics()

        with metrics.track_probestore("get_probe"):
            pass

        get = metrics.registry.get_sample_value
        assert get("rhobs_synthetics_api_probestore_request_duration_seconds_count", {"operation": "get_probe"}) == 1.0
        assert get("rhobs_synthetics_api_probestore_errors_total", {"operation": "get_probe"}) is None

    def test_counts_failures(self) -> None:
        """Unexpected exceptions are counted and re-raised."""
        metrics = Metrics()

        with pytest.raises(ProbeStoreError):
            with metrics.track_probestore("update_probe"):
                raise ProbeStoreError("boom")

        get = metrics.registry.get_sample_value
        assert get("rhobs_synthetics_api_probestore_errors_total", {"operation": "update_probe"}) == 1.0
        assert get("rhobs_synthetics_api_probestore_request_duration_seconds_count", {"operation": "update_probe"}) == 1.0

    def test_expected_exceptions_not_counted(self) -> None:
        """Exceptions listed as expected are re-raised but not counted."""
        metrics = Metrics()

        with pytest.raises(ProbeNotFoundError):
            with metrics.track_probestore("get_probe", expected=(ProbeNotFoundError,)):
                raise ProbeNotFoundError("abc")

        assert metrics.registry.get_sample_value(
            "rhobs_synthetics_api_probestore_errors_total", {"operation": "get_probe"}
        ) is None
