"""Probe storage interface shared by the file and Kubernetes backends."""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace

from .models import (
    BASE_APP_LABEL_KEY,
    BASE_APP_LABEL_VALUE,
    PROBE_STATUS_LABEL_KEY,
    PROBE_URL_HASH_LABEL_KEY,
    STATUS_ACTIVE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_TERMINATING,
    Probe,
)
from .selector import Selector, SelectorError, parse

logger = logging.getLogger(__name__)


class ProbeStoreError(Exception):
    """Raised when a storage operation fails (I/O, serialization, transport)."""

    pass


class ProbeNotFoundError(ProbeStoreError):
    """Raised when no probe exists for the requested id."""

    def __init__(self, probe_id: str) -> None:
        super().__init__(f"probe with ID {probe_id} not found")
        self.probe_id = probe_id


class ProbeAlreadyExistsError(ProbeStoreError):
    """Raised when a probe with the same id or URL hash is already stored."""

    pass


class InvalidInputError(ProbeStoreError):
    """Raised when an operation receives unusable input (empty id, empty hash, ...)."""

    pass


class InvalidSelectorError(InvalidInputError):
    """Raised when a label selector cannot be parsed."""

    pass


class ConflictError(ProbeStoreError):
    """Raised when a write loses an optimistic-concurrency race."""

    pass


def parse_selector(selector: str | None) -> Selector:
    """Parse a label selector, converting parse failures to InvalidSelectorError."""
    try:
        return parse(selector)
    except SelectorError as e:
        raise InvalidSelectorError(f"failed to parse label selector: {e}") from e


def with_system_labels(labels: dict[str, str] | None, status: str, url_hash: str | None = None) -> dict[str, str]:
    """Return a copy of labels with the app and status system labels set.

    The URL hash label is only written when url_hash is given.
    """
    result = dict(labels or {})
    result[BASE_APP_LABEL_KEY] = BASE_APP_LABEL_VALUE
    result[PROBE_STATUS_LABEL_KEY] = status
    if url_hash is not None:
        result[PROBE_URL_HASH_LABEL_KEY] = url_hash
    return result


class ProbeStore(ABC):
    """Storage backend for probe records.

    Backends own the serialized representation of each record. All failures
    surface as ProbeStoreError subclasses so callers can branch on type.
    """

    @abstractmethod
    def list_probes(self, selector: str) -> list[Probe]:
        """Return all probes whose labels match the selector.

        Raises:
            InvalidSelectorError: If the selector cannot be parsed.
        """

    @abstractmethod
    def get_probe(self, probe_id: str) -> Probe:
        """Return the probe with the given id.

        Raises:
            ProbeNotFoundError: If no such probe exists.
        """

    @abstractmethod
    def create_probe(self, probe: Probe, url_hash: str) -> Probe:
        """Persist a new probe with its system labels injected.

        Raises:
            InvalidInputError: If the id or URL hash is empty.
            ProbeAlreadyExistsError: If a probe with this URL hash or id exists.
        """

    @abstractmethod
    def update_probe(self, probe: Probe) -> Probe:
        """Overwrite an existing probe, re-injecting system labels.

        Raises:
            ProbeNotFoundError: If no such probe exists.
        """

    @abstractmethod
    def delete_probe_storage(self, probe_id: str) -> None:
        """Unconditionally remove a probe from storage.

        Raises:
            ProbeNotFoundError: If no such probe exists.
        """

    @abstractmethod
    def probe_with_url_hash_exists(self, url_hash: str) -> bool:
        """Return True if any stored probe carries this URL hash label."""

    def check_ready(self) -> bool:
        """Return True if the backend can serve requests."""
        return True

    def delete_probe(self, probe_id: str) -> None:
        """Delete a probe according to its current status.

        Pending and failed probes were never (or are no longer) handled by an
        agent, so they are removed immediately. Active probes move to
        terminating and stay stored until the agent finishes its cleanup.
        Terminating probes are left untouched. Unknown statuses are handled
        like pending.

        Raises:
            ProbeNotFoundError: If no such probe exists.
        """
        probe = self.get_probe(probe_id)

        if probe.status == STATUS_ACTIVE:
            self.update_probe(replace(probe, status=STATUS_TERMINATING))
            logger.info("Set active probe %s status to terminating (waiting for agent cleanup)", probe_id)
            return

        if probe.status == STATUS_TERMINATING:
            logger.info("Probe %s is already in terminating state", probe_id)
            return

        try:
            self.delete_probe_storage(probe_id)
        except ProbeNotFoundError:
            raise
        except ProbeStoreError as e:
            raise ProbeStoreError(f"failed to delete {probe.status} probe {probe_id}: {e}") from e

        if probe.status == STATUS_PENDING:
            logger.info("Deleted pending probe %s immediately (never processed by agent)", probe_id)
        elif probe.status == STATUS_FAILED:
            logger.info("Deleted failed probe %s immediately", probe_id)
        else:
            logger.info("Deleted probe %s with unknown status %r immediately", probe_id, probe.status)
