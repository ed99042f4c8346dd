"""Periodic probe counting for the probes_total gauge."""

import logging
from collections import Counter
from threading import Event, Thread

from .metrics import Metrics
from .models import BASE_SELECTOR, PRIVATE_PROBE_LABEL_KEY, Probe
from .store import ProbeStore, ProbeStoreError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30


def count_probes(probes: list[Probe]) -> Counter[tuple[str, str]]:
    """Count probes by (status, private), where private is "true" or "false"."""
    counts: Counter[tuple[str, str]] = Counter()
    for probe in probes:
        private = "true" if probe.labels.get(PRIVATE_PROBE_LABEL_KEY) == "true" else "false"
        counts[(probe.status, private)] += 1
    return counts


class ProbeMonitor:
    """Background loop that publishes probe counts by status.

    Example:
        monitor = ProbeMonitor(store, metrics, interval=30)
        monitor.start()
        # ... later ...
        monitor.stop()
    """

    def __init__(self, store: ProbeStore, metrics: Metrics, interval: float = DEFAULT_INTERVAL) -> None:
        """Initialize the monitor.

        Args:
            store: Probe store to list records from.
            metrics: Metrics holding the probes_total gauge.
            interval: Seconds between counting cycles.
        """
        self._store = store
        self._metrics = metrics
        self._interval = interval
        self._stop_event = Event()
        self._thread: Thread | None = None
        # Label combinations reported so far, so vanished ones can be reset to 0
        self._seen: set[tuple[str, str]] = set()

    def start(self) -> None:
        """Start the counting loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Probe monitor already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="probe-monitor")
        self._thread.start()
        logger.info("Probe monitor started with %ss interval", self._interval)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the counting loop.

        Args:
            timeout: Maximum seconds to wait for the loop to stop.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        logger.info("Stopping probe monitor...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Probe monitor thread did not stop within timeout")
        else:
            logger.info("Probe monitor stopped")

    def is_running(self) -> bool:
        """Check if the counting loop is currently running."""
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        logger.debug("Probe monitor loop started")

        while not self._stop_event.is_set():
            try:
                self.update_metrics()
            except Exception:
                logger.exception("Unexpected error updating probe metrics")
            self._stop_event.wait(timeout=self._interval)

        logger.debug("Probe monitor loop exited")

    def update_metrics(self) -> bool:
        """Run one counting cycle.

        Returns:
            True if the gauge was updated, False if listing failed and the
            cycle was skipped.
        """
        try:
            probes = self._store.list_probes(BASE_SELECTOR)
        except ProbeStoreError as e:
            logger.error("Failed to list probes for metrics: %s", e)
            return False

        counts = count_probes(probes)
        for combination in self._seen - counts.keys():
            self._metrics.set_probes_total(*combination, 0)
        for (state, private), count in counts.items():
            self._metrics.set_probes_total(state, private, count)

        self._seen.update(counts.keys())
        logger.debug("Updated probe metrics: %d probes in %d groups", len(probes), len(counts))
        return True
