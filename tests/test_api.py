"""Tests for the API module."""

import json
import socket
import time
import urllib.error
import urllib.request
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from synthetics_api.api import (
    ApiError,
    ApiServer,
    _split_probe_path,
)
from synthetics_api.config import ServerConfig
from synthetics_api.local_store import LocalProbeStore
from synthetics_api.metrics import Metrics
from synthetics_api.probe_service import ProbeService
from synthetics_api.store import ProbeStoreError

PROBE_ID = "0b3c2a4e-0a53-4c3f-9f3b-7d0c6b0b6b01"


def get_free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def make_config(port: int) -> ServerConfig:
    return ServerConfig(host="127.0.0.1", port=port, graceful_timeout=5.0)


@pytest.fixture
def store(tmp_path: Path) -> LocalProbeStore:
    """Create a file-backed probe store in a temporary directory."""
    return LocalProbeStore(str(tmp_path / "probes"))


@pytest.fixture
def metrics() -> Metrics:
    """Create metrics with a private registry."""
    return Metrics()


@pytest.fixture
def service(store: LocalProbeStore, metrics: Metrics) -> ProbeService:
    """Create a probe service over the temporary store."""
    return ProbeService(store, metrics)


class TestSplitProbePath:
    """Tests for _split_probe_path function."""

    @pytest.mark.parametrize("path", ["/probes", "/probes/", "/metrics/probes", "/metrics/probes/"])
    def test_collection(self, path: str) -> None:
        """Collection routes match without an id."""
        assert _split_probe_path(path) == (True, None)

    @pytest.mark.parametrize("prefix", ["/probes", "/metrics/probes"])
    def test_item(self, prefix: str) -> None:
        """Item routes return the id."""
        assert _split_probe_path(f"{prefix}/{PROBE_ID}") == (True, PROBE_ID)

    @pytest.mark.parametrize("path", ["/", "/metrics", "/probesx", "/probes/a/b"])
    def test_no_match(self, path: str) -> None:
        """Other paths do not match."""
        assert _split_probe_path(path) == (False, None)


class TestApiServer:
    """Tests for ApiServer class."""

    def test_starts_and_stops(self, service: ProbeService) -> None:
        """Server starts and stops without errors."""
        server = ApiServer(make_config(get_free_port()), service)

        assert not server.is_running

        server.start()
        assert server.is_running

        server.stop()
        assert not server.is_running

    def test_start_twice_is_safe(self, service: ProbeService) -> None:
        """Calling start() twice doesn't cause errors."""
        server = ApiServer(make_config(get_free_port()), service)

        try:
            server.start()
            server.start()  # Should not raise
            assert server.is_running
        finally:
            server.stop()

    def test_stop_without_start_is_safe(self, service: ProbeService) -> None:
        """Calling stop() without start() doesn't cause errors."""
        server = ApiServer(make_config(get_free_port()), service)

        server.stop()  # Should not raise

    def test_raises_on_port_conflict(self, service: ProbeService) -> None:
        """Raises ApiError when port is already in use."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            s.listen(1)
            port = s.getsockname()[1]

            server = ApiServer(make_config(port), service)
            with pytest.raises(ApiError, match="already in use"):
                server.start()

    def test_store_defaults_to_service_store(self, service: ProbeService) -> None:
        """Readiness uses the service's store unless one is given."""
        server = ApiServer(make_config(get_free_port()), service)

        assert server.store is service.store


class TestApiEndpoints:
    """Integration tests for API endpoints."""

    @pytest.fixture
    def running_server(self, service: ProbeService, metrics: Metrics) -> Iterator[ApiServer]:
        """Start a server and yield it, stopping after test."""
        server = ApiServer(make_config(get_free_port()), service, metrics)
        server.start()
        # Give server time to start
        time.sleep(0.1)
        yield server
        server.stop()

    def _request(
        self,
        server: ApiServer,
        method: str,
        path: str,
        body: object = None,
        raw: bytes | None = None,
    ) -> tuple[int, object]:
        """Make a request and return (status_code, decoded_body)."""
        url = f"http://127.0.0.1:{server.port}{path}"
        data = raw
        if body is not None:
            data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(url, data=data, method=method)
        if data is not None:
            request.add_header("Content-Type", "application/json")

        try:
            with urllib.request.urlopen(request, timeout=5) as response:
                return response.status, self._decode(response.read(), response.headers.get("Content-Type", ""))
        except urllib.error.HTTPError as e:
            return e.code, self._decode(e.read(), e.headers.get("Content-Type", ""))

    def _decode(self, payload: bytes, content_type: str) -> object:
        if not payload:
            return None
        if content_type.startswith("application/json"):
            return json.loads(payload.decode("utf-8"))
        return payload.decode("utf-8")

    def _create(self, server: ApiServer, url: str, labels: dict | None = None) -> dict:
        body: dict = {"static_url": url}
        if labels is not None:
            body["labels"] = labels
        status, created = self._request(server, "POST", "/probes", body)
        assert status == 201
        return created

    def test_livez(self, running_server: ApiServer) -> None:
        """GET /livez returns ok."""
        assert self._request(running_server, "GET", "/livez") == (200, "ok")

    def test_readyz(self, running_server: ApiServer) -> None:
        """GET /readyz returns ok when the store is ready."""
        assert self._request(running_server, "GET", "/readyz") == (200, "ok")

    def test_readyz_not_ready(self, service: ProbeService) -> None:
        """GET /readyz returns 503 when the store is unreachable."""
        store = MagicMock()
        store.check_ready.return_value = False
        server = ApiServer(make_config(get_free_port()), service, store=store)
        server.start()
        try:
            status, _ = self._request(server, "GET", "/readyz")
        finally:
            server.stop()

        assert status == 503

    def test_create_probe(self, running_server: ApiServer) -> None:
        """POST /probes returns 201 with a pending probe."""
        status, body = self._request(
            running_server, "POST", "/probes", {"static_url": "https://example.com", "labels": {"env": "prod"}}
        )

        assert status == 201
        assert body["static_url"] == "https://example.com"
        assert body["status"] == "pending"
        assert body["labels"]["env"] == "prod"
        assert body["labels"]["app"] == "rhobs-synthetics-probe"

    def test_create_duplicate(self, running_server: ApiServer) -> None:
        """POST /probes for an existing URL returns 409."""
        self._create(running_server, "https://example.com")

        status, body = self._request(running_server, "POST", "/probes", {"static_url": "https://example.com"})

        assert status == 409
        assert body == {"error": {"message": 'a probe for static_url "https://example.com" already exists'}}

    def test_create_invalid_json(self, running_server: ApiServer) -> None:
        """Malformed JSON bodies return 400."""
        status, body = self._request(running_server, "POST", "/probes", raw=b"{not json")

        assert status == 400
        assert "invalid request body" in body["error"]["message"]

    def test_create_missing_url(self, running_server: ApiServer) -> None:
        """Bodies without static_url return 400."""
        status, body = self._request(running_server, "POST", "/probes", {"labels": {"env": "prod"}})

        assert status == 400
        assert "static_url" in body["error"]["message"]

    def test_create_malformed_label(self, running_server: ApiServer) -> None:
        """Labels that are not valid Kubernetes labels return 400."""
        status, body = self._request(
            running_server, "POST", "/probes", {"static_url": "https://example.com", "labels": {"env": "has space"}}
        )

        assert status == 400
        assert "invalid label value" in body["error"]["message"]

    def test_create_non_object_body(self, running_server: ApiServer) -> None:
        """Bodies that are not JSON objects return 400."""
        status, _ = self._request(running_server, "POST", "/probes", ["https://example.com"])

        assert status == 400

    def test_list_probes(self, running_server: ApiServer) -> None:
        """GET /probes returns all probes under a probes key."""
        self._create(running_server, "https://a.example.com")
        self._create(running_server, "https://b.example.com")

        status, body = self._request(running_server, "GET", "/probes")

        assert status == 200
        assert len(body["probes"]) == 2

    def test_list_with_selector(self, running_server: ApiServer) -> None:
        """label_selector narrows the listing."""
        self._create(running_server, "https://a.example.com", {"env": "prod"})
        self._create(running_server, "https://b.example.com", {"env": "dev"})

        status, body = self._request(running_server, "GET", "/probes?label_selector=env%3Dprod")

        assert status == 200
        assert [p["static_url"] for p in body["probes"]] == ["https://a.example.com"]

    def test_list_invalid_selector(self, running_server: ApiServer) -> None:
        """Malformed selectors return 400."""
        status, body = self._request(running_server, "GET", "/probes?label_selector=env%20in%20prod")

        assert status == 400
        assert body["error"]["message"].startswith("invalid label_selector: ")

    def test_list_empty(self, running_server: ApiServer) -> None:
        """An empty store lists an empty array."""
        assert self._request(running_server, "GET", "/probes") == (200, {"probes": []})

    def test_legacy_prefix(self, running_server: ApiServer) -> None:
        """Probe routes are also served under /metrics/probes."""
        created = self._create(running_server, "https://example.com")

        status, body = self._request(running_server, "GET", f"/metrics/probes/{created['id']}")

        assert status == 200
        assert body == created

    def test_get_missing(self, running_server: ApiServer) -> None:
        """GET for an unknown id returns a 404 warning."""
        status, body = self._request(running_server, "GET", f"/probes/{PROBE_ID}")

        assert status == 404
        assert body == {"warning": {"message": f"probe with ID {PROBE_ID} not found"}}

    def test_get_invalid_id(self, running_server: ApiServer) -> None:
        """Non-UUID ids return 400."""
        status, body = self._request(running_server, "GET", "/probes/not-a-uuid")

        assert status == 400
        assert "invalid probe ID" in body["error"]["message"]

    def test_patch_protected_label(self, running_server: ApiServer) -> None:
        """Changing a system label returns 403."""
        created = self._create(running_server, "https://example.com")

        status, body = self._request(
            running_server, "PATCH", f"/probes/{created['id']}", {"labels": {"app": "something-else"}}
        )

        assert status == 403
        assert body == {"error": {"message": "modification of system-managed label 'app' is forbidden"}}

    def test_patch_invalid_status(self, running_server: ApiServer) -> None:
        """Unknown statuses return 400."""
        created = self._create(running_server, "https://example.com")

        status, _ = self._request(running_server, "PATCH", f"/probes/{created['id']}", {"status": "running"})

        assert status == 400

    def test_patch_missing(self, running_server: ApiServer) -> None:
        """PATCH for an unknown id returns 404."""
        status, body = self._request(running_server, "PATCH", f"/probes/{PROBE_ID}", {"status": "active"})

        assert status == 404
        assert "warning" in body

    def test_delete_missing(self, running_server: ApiServer) -> None:
        """DELETE for an unknown id returns 404."""
        status, _ = self._request(running_server, "DELETE", f"/probes/{PROBE_ID}")

        assert status == 404

    def test_unknown_route(self, running_server: ApiServer) -> None:
        """Unknown paths return 404."""
        status, _ = self._request(running_server, "GET", "/nope")

        assert status == 404

    def test_method_not_allowed(self, running_server: ApiServer) -> None:
        """DELETE on the collection returns 405."""
        status, _ = self._request(running_server, "DELETE", "/probes")

        assert status == 405

    def test_internal_error_is_generic(self, running_server: ApiServer, service: ProbeService) -> None:
        """Storage failures return 500 without leaking details."""
        service.store = MagicMock()
        service.store.list_probes.side_effect = ProbeStoreError("/var/lib/secret/path unreadable")

        status, body = self._request(running_server, "GET", "/probes")

        assert status == 500
        assert body == {"error": {"message": "internal server error"}}

    def test_metrics_endpoint(self, running_server: ApiServer) -> None:
        """GET /metrics exposes request counters."""
        self._request(running_server, "GET", "/livez")

        # Requests are recorded after the response is written, so poll briefly
        expected = 'rhobs_synthetics_api_http_requests_total{code="200",method="GET"}'
        for _ in range(50):
            status, body = self._request(running_server, "GET", "/metrics")
            if expected in body:
                break
            time.sleep(0.05)

        assert status == 200
        assert expected in body
        assert "rhobs_synthetics_api_http_requests_in_flight" in body

    def test_probe_lifecycle(self, running_server: ApiServer) -> None:
        """Create, duplicate, activate, delete, then remove a probe."""
        status, created = self._request(running_server, "POST", "/probes", {"static_url": "https://lifecycle.example.com"})
        assert status == 201
        assert created["status"] == "pending"
        probe_path = f"/probes/{created['id']}"

        status, _ = self._request(running_server, "POST", "/probes", {"static_url": "https://lifecycle.example.com"})
        assert status == 409

        status, updated = self._request(running_server, "PATCH", probe_path, {"status": "active"})
        assert status == 200
        assert updated["status"] == "active"

        status, body = self._request(running_server, "DELETE", probe_path)
        assert status == 204
        assert body is None

        status, current = self._request(running_server, "GET", probe_path)
        assert status == 200
        assert current["status"] == "terminating"

        status, removed = self._request(running_server, "PATCH", probe_path, {"status": "deleted"})
        assert status == 200
        assert removed["status"] == "deleted"

        status, _ = self._request(running_server, "GET", probe_path)
        assert status == 404
