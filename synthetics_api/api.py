"""HTTP API server for probe management."""

import json
import logging
import threading
import time
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .config import ServerConfig
from .labels import ProtectedLabelError
from .metrics import Metrics
from .probe_service import ProbeService
from .store import (
    ConflictError,
    InvalidInputError,
    ProbeAlreadyExistsError,
    ProbeNotFoundError,
    ProbeStore,
    ProbeStoreError,
)

logger = logging.getLogger(__name__)

# Probe routes are served under both prefixes; /metrics/probes is the
# historical location kept for existing clients.
PROBE_PATH_PREFIXES = ("/probes", "/metrics/probes")

# Request bodies are small JSON documents; anything larger is rejected.
MAX_BODY_BYTES = 1024 * 1024

INTERNAL_ERROR_MESSAGE = "internal server error"


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


class _BadRequest(Exception):
    """Raised while decoding a request that cannot be served."""

    pass


def _split_probe_path(path: str) -> tuple[bool, str | None]:
    """Match a path against the probe routes.

    Returns:
        (matched, probe_id): probe_id is None for the collection route.
    """
    for prefix in PROBE_PATH_PREFIXES:
        if path == prefix or path == prefix + "/":
            return True, None
        if path.startswith(prefix + "/"):
            probe_id = path[len(prefix) + 1 :]
            if probe_id and "/" not in probe_id:
                return True, probe_id
    return False, None


def _validate_probe_id(probe_id: str) -> str:
    try:
        uuid.UUID(probe_id)
    except ValueError:
        raise _BadRequest(f"invalid probe ID format: {probe_id!r} is not a UUID")
    return probe_id


class ProbeHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the probe API endpoints."""

    # Class-level references set by factory
    service: ProbeService | None = None
    store: ProbeStore | None = None
    metrics: Metrics | None = None
    write_timeout: float | None = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def send_response(self, code: int, message: str | None = None) -> None:
        self._status_code = code
        super().send_response(code, message)

    def _send_body(self, code: int, body: bytes, content_type: str) -> None:
        if self.write_timeout is not None:
            self.connection.settimeout(self.write_timeout)
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_json(self, code: int, data: dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self._send_body(code, body, "application/json")

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": {"message": message}})

    def _send_warning_json(self, code: int, message: str) -> None:
        """Send a JSON warning response (used for missing resources)."""
        self._send_json(code, {"warning": {"message": message}})

    def _send_text(self, code: int, text: str) -> None:
        self._send_body(code, text.encode("utf-8"), "text/plain; charset=utf-8")

    def _send_no_content(self) -> None:
        self.send_response(204)
        self.send_header("Connection", "close")
        self.end_headers()

    def _read_json_body(self) -> dict[str, Any]:
        """Read and decode the request body as a JSON object.

        Raises:
            _BadRequest: If the body is missing, too large, or not a JSON object.
        """
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            raise _BadRequest("invalid Content-Length header")
        if length <= 0:
            raise _BadRequest("request body is required")
        if length > MAX_BODY_BYTES:
            raise _BadRequest("request body too large")

        raw = self.rfile.read(length)
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise _BadRequest(f"invalid request body: {e}")
        if not isinstance(data, dict):
            raise _BadRequest("request body must be a JSON object")
        return data

    def _dispatch(self, method: str, handler: Any) -> None:
        """Run a method handler with request metrics and error mapping."""
        self._status_code = 0
        start = time.monotonic()
        if self.metrics is not None:
            self.metrics.http_requests_in_flight.inc()

        try:
            try:
                handler()
            except _BadRequest as e:
                self._send_error_json(400, str(e))
            except Exception as e:
                self._handle_error(e)
        finally:
            if self.metrics is not None:
                self.metrics.http_requests_in_flight.dec()
                self.metrics.record_http_request(method, self._status_code, time.monotonic() - start)

    def _handle_error(self, error: Exception) -> None:
        """Map a service exception to its HTTP response."""
        if isinstance(error, ProbeNotFoundError):
            self._send_warning_json(404, str(error))
        elif isinstance(error, ProtectedLabelError):
            self._send_error_json(403, str(error))
        elif isinstance(error, InvalidInputError):
            self._send_error_json(400, str(error))
        elif isinstance(error, (ProbeAlreadyExistsError, ConflictError)):
            self._send_error_json(409, str(error))
        elif isinstance(error, ProbeStoreError):
            logger.error("Storage error handling %s %s: %s", self.command, self.path, error)
            self._send_error_json(500, INTERNAL_ERROR_MESSAGE)
        else:
            logger.exception("Error handling %s %s: %s", self.command, self.path, error)
            self._send_error_json(500, INTERNAL_ERROR_MESSAGE)

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch("GET", self._route_get)

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch("POST", self._route_post)

    def do_PATCH(self) -> None:
        """Handle PATCH requests."""
        self._dispatch("PATCH", self._route_patch)

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch("DELETE", self._route_delete)

    def _route_get(self) -> None:
        url = urlsplit(self.path)
        if url.path == "/livez":
            self._send_text(200, "ok")
            return
        if url.path == "/readyz":
            self._handle_readyz()
            return
        if url.path == "/metrics":
            self._handle_metrics()
            return

        matched, probe_id = _split_probe_path(url.path)
        if not matched:
            self._send_warning_json(404, "not found")
        elif probe_id is None:
            self._handle_list(url.query)
        else:
            self._handle_get(_validate_probe_id(probe_id))

    def _route_post(self) -> None:
        matched, probe_id = _split_probe_path(urlsplit(self.path).path)
        if not matched:
            self._send_warning_json(404, "not found")
        elif probe_id is not None:
            self._send_error_json(405, "method not allowed")
        else:
            self._handle_create()

    def _route_patch(self) -> None:
        matched, probe_id = _split_probe_path(urlsplit(self.path).path)
        if not matched:
            self._send_warning_json(404, "not found")
        elif probe_id is None:
            self._send_error_json(405, "method not allowed")
        else:
            self._handle_update(_validate_probe_id(probe_id))

    def _route_delete(self) -> None:
        matched, probe_id = _split_probe_path(urlsplit(self.path).path)
        if not matched:
            self._send_warning_json(404, "not found")
        elif probe_id is None:
            self._send_error_json(405, "method not allowed")
        else:
            self._handle_delete(_validate_probe_id(probe_id))

    def _handle_readyz(self) -> None:
        """Handle GET /readyz - report whether the probe store is reachable."""
        if self.store is not None and not self.store.check_ready():
            self._send_text(503, "probe store not ready")
            return
        self._send_text(200, "ok")

    def _handle_metrics(self) -> None:
        """Handle GET /metrics - Prometheus exposition."""
        if self.metrics is None:
            self._send_warning_json(404, "not found")
            return
        body, content_type = self.metrics.render()
        self._send_body(200, body, content_type)

    def _handle_list(self, query: str) -> None:
        """Handle GET /probes[?label_selector=...]."""
        params = parse_qs(query)
        selectors = params.get("label_selector")
        label_selector = selectors[0] if selectors else None

        probes = self.service.list_probes(label_selector)
        self._send_json(200, {"probes": [p.to_dict() for p in probes]})

    def _handle_get(self, probe_id: str) -> None:
        """Handle GET /probes/<id>."""
        probe = self.service.get_probe(probe_id)
        self._send_json(200, probe.to_dict())

    def _handle_create(self) -> None:
        """Handle POST /probes."""
        body = self._read_json_body()
        probe = self.service.create_probe(body.get("static_url"), body.get("labels"))
        self._send_json(201, probe.to_dict())

    def _handle_update(self, probe_id: str) -> None:
        """Handle PATCH /probes/<id>."""
        body = self._read_json_body()
        probe = self.service.update_probe(probe_id, status=body.get("status"), labels=body.get("labels"))
        self._send_json(200, probe.to_dict())

    def _handle_delete(self, probe_id: str) -> None:
        """Handle DELETE /probes/<id>.

        Responds 204 both when the probe is removed and when it only moves to
        terminating.
        """
        self.service.delete_probe(probe_id)
        self._send_no_content()


def _create_handler_class(
    service: ProbeService,
    store: ProbeStore | None = None,
    metrics: Metrics | None = None,
    read_timeout: float | None = None,
    write_timeout: float | None = None,
) -> type:
    """Create a handler class with the service, store and metrics bound."""

    class BoundProbeHandler(ProbeHandler):
        pass

    BoundProbeHandler.service = service
    BoundProbeHandler.store = store
    BoundProbeHandler.metrics = metrics
    BoundProbeHandler.timeout = read_timeout
    BoundProbeHandler.write_timeout = write_timeout
    return BoundProbeHandler


class ApiServer:
    """Threaded HTTP API server for probe management."""

    def __init__(
        self,
        config: ServerConfig,
        service: ProbeService,
        metrics: Metrics | None = None,
        store: ProbeStore | None = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: Server configuration (bind address, timeouts).
            service: Probe service handling requests.
            metrics: Metrics to record requests into and expose on /metrics.
            store: Probe store used for readiness checks. Defaults to the
                service's store.
        """
        self.config = config
        self.service = service
        self.metrics = metrics
        self.store = store if store is not None else service.store
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    @property
    def port(self) -> int:
        """The bound port (differs from config when config.port is 0)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.port

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(
                self.service,
                self.store,
                self.metrics,
                read_timeout=self.config.read_timeout,
                write_timeout=self.config.write_timeout,
            )
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on %s:%d", self.config.host, self.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or the API server is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ApiError(f"Failed to start API server on {self.config.host}:{self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server, waiting up to graceful_timeout for the loop to exit."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=self.config.graceful_timeout)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
