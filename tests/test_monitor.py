"""Tests for the monitor module."""

import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from urllib3.exceptions import MaxRetryError

from synthetics_api.kube_store import KubernetesProbeStore
from synthetics_api.local_store import LocalProbeStore
from synthetics_api.metrics import Metrics
from synthetics_api.models import BASE_SELECTOR, Probe
from synthetics_api.monitor import ProbeMonitor, count_probes
from synthetics_api.probe_service import ProbeService
from synthetics_api.store import ProbeStoreError

PROBES_TOTAL = "rhobs_synthetics_api_probes_total"


@pytest.fixture
def store(tmp_path: Path) -> LocalProbeStore:
    """Create a file-backed probe store in a temporary directory."""
    return LocalProbeStore(str(tmp_path / "probes"))


def gauge(metrics: Metrics, state: str, private: str) -> float | None:
    return metrics.registry.get_sample_value(PROBES_TOTAL, {"state": state, "private": private})


class TestCountProbes:
    """Tests for count_probes function."""

    def test_groups_by_status_and_private(self) -> None:
        """Only the exact value "true" marks a probe private."""
        probes = [
            Probe(id="1", static_url="https://a.example", status="active", labels={"private": "true"}),
            Probe(id="2", static_url="https://b.example", status="active", labels={"private": "false"}),
            Probe(id="3", static_url="https://c.example", status="active"),
            Probe(id="4", static_url="https://d.example", status="pending", labels={"private": "yes"}),
        ]

        counts = count_probes(probes)

        assert counts == {("active", "true"): 1, ("active", "false"): 2, ("pending", "false"): 1}

    def test_empty(self) -> None:
        """No probes means no groups."""
        assert not count_probes([])


class TestProbeMonitor:
    """Tests for ProbeMonitor class."""

    def test_update_metrics_sets_gauge(self, store: LocalProbeStore) -> None:
        """One cycle publishes counts for every group."""
        metrics = Metrics()
        service = ProbeService(store, metrics)
        service.create_probe("https://a.example.com", {"private": "true"})
        service.create_probe("https://b.example.com")
        active = service.create_probe("https://c.example.com")
        service.update_probe(active.id, status="active")

        monitor = ProbeMonitor(store, metrics)
        assert monitor.update_metrics() is True

        assert gauge(metrics, "pending", "true") == 1.0
        assert gauge(metrics, "pending", "false") == 1.0
        assert gauge(metrics, "active", "false") == 1.0

    def test_vanished_groups_reset_to_zero(self, store: LocalProbeStore) -> None:
        """Groups with no remaining probes are reported as 0."""
        metrics = Metrics()
        service = ProbeService(store, metrics)
        probe = service.create_probe("https://a.example.com")
        monitor = ProbeMonitor(store, metrics)
        monitor.update_metrics()

        service.delete_probe(probe.id)
        monitor.update_metrics()

        assert gauge(metrics, "pending", "false") == 0.0

    def test_lists_with_base_selector(self) -> None:
        """The monitor counts only managed probes."""
        store = MagicMock()
        store.list_probes.return_value = []

        ProbeMonitor(store, Metrics()).update_metrics()

        store.list_probes.assert_called_once_with(BASE_SELECTOR)

    def test_list_failure_skips_cycle(self) -> None:
        """A failing list leaves the gauge untouched."""
        metrics = Metrics()
        metrics.set_probes_total("active", "false", 5)
        store = MagicMock()
        store.list_probes.side_effect = ProbeStoreError("unreachable")

        assert ProbeMonitor(store, metrics).update_metrics() is False
        assert gauge(metrics, "active", "false") == 5.0

    def test_unreachable_kubernetes_skips_cycle(self) -> None:
        """A connection failure from the Kubernetes store skips the cycle."""
        core_api = MagicMock()
        core_api.list_namespaced_config_map.side_effect = MaxRetryError(pool=None, url="/api")
        monitor = ProbeMonitor(KubernetesProbeStore(core_api, "synthetics"), Metrics())

        assert monitor.update_metrics() is False

    def test_loop_survives_unexpected_errors(self) -> None:
        """An unexpected exception in one cycle does not end the loop."""
        store = MagicMock()
        store.list_probes.side_effect = RuntimeError("boom")
        monitor = ProbeMonitor(store, Metrics(), interval=0.01)

        monitor.start()
        deadline = time.monotonic() + 2
        while store.list_probes.call_count < 3 and time.monotonic() < deadline:
            time.sleep(0.01)

        assert store.list_probes.call_count >= 3
        assert monitor.is_running()
        monitor.stop()

    def test_start_and_stop(self) -> None:
        """The loop runs a cycle on start and stops cleanly."""
        store = MagicMock()
        store.list_probes.return_value = []
        monitor = ProbeMonitor(store, Metrics(), interval=60)

        monitor.start()
        assert monitor.is_running()
        deadline = time.monotonic() + 2
        while not store.list_probes.called and time.monotonic() < deadline:
            time.sleep(0.01)

        monitor.stop()

        assert not monitor.is_running()
        store.list_probes.assert_called_with(BASE_SELECTOR)

    def test_stop_without_start_is_safe(self) -> None:
        """Calling stop() without start() doesn't cause errors."""
        ProbeMonitor(MagicMock(), Metrics()).stop()
