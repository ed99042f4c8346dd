"""Probe request handling: uniqueness, label protection and status-driven deletion."""

import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any
from urllib.parse import urlparse

from .labels import validate_protected_labels
from .metrics import Metrics
from .models import (
    BASE_SELECTOR,
    PROBE_STATUSES,
    STATUS_DELETED,
    STATUS_PENDING,
    Probe,
    compute_url_hash,
)
from .selector import SelectorError, parse, validate_label_key, validate_label_value
from .store import (
    InvalidInputError,
    InvalidSelectorError,
    ProbeAlreadyExistsError,
    ProbeNotFoundError,
    ProbeStore,
    ProbeStoreError,
    with_system_labels,
)

logger = logging.getLogger(__name__)

UPDATABLE_STATUSES = PROBE_STATUSES + (STATUS_DELETED,)


def _validate_static_url(static_url: Any) -> str:
    if not isinstance(static_url, str) or not static_url:
        raise InvalidInputError("static_url is required and must be a non-empty string")
    parsed = urlparse(static_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError(f"static_url must be an absolute http:// or https:// URL, got {static_url!r}")
    return static_url


def _validate_labels(labels: Any) -> dict[str, str]:
    if labels is None:
        return {}
    if not isinstance(labels, Mapping):
        raise InvalidInputError("labels must be an object of string keys and values")
    for key, value in labels.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise InvalidInputError("labels must be an object of string keys and values")
        try:
            validate_label_key(key)
            validate_label_value(value)
        except SelectorError as e:
            raise InvalidInputError(str(e)) from e
    return dict(labels)


class ProbeService:
    """Business rules on top of a probe store.

    Holds no state of its own: the store is the source of truth for every call.
    Expected outcomes surface as exceptions the HTTP layer maps to statuses:
    ProbeNotFoundError (404), ProbeAlreadyExistsError (409), ProtectedLabelError
    (403), InvalidInputError (400), ConflictError (409), other ProbeStoreError (500).
    """

    def __init__(self, store: ProbeStore, metrics: Metrics | None = None) -> None:
        self.store = store
        self.metrics = metrics if metrics is not None else Metrics()

    @contextmanager
    def _storage_call(
        self,
        operation: str,
        context: str,
        expected: tuple[type[Exception], ...] = (ProbeNotFoundError,),
    ) -> Iterator[None]:
        """Track a store call and add context to untyped storage failures.

        Typed failures (not found, conflict, invalid input, ...) pass through
        unchanged so callers can still branch on them.
        """
        with self.metrics.track_probestore(operation, expected=expected):
            try:
                yield
            except ProbeStoreError as e:
                if type(e) is not ProbeStoreError:
                    raise
                raise ProbeStoreError(f"{context}: {e}") from e

    def list_probes(self, label_selector: str | None = None) -> list[Probe]:
        """List managed probes, optionally narrowed by a caller selector.

        Raises:
            InvalidSelectorError: If the caller selector is malformed.
        """
        final_selector = BASE_SELECTOR
        if label_selector:
            try:
                parse(label_selector)
            except SelectorError as e:
                raise InvalidSelectorError(f"invalid label_selector: {e}") from e
            final_selector = f"{BASE_SELECTOR},{label_selector}"

        with self._storage_call(
            "list_probes", "failed to list probes from storage", expected=(InvalidSelectorError,)
        ):
            return self.store.list_probes(final_selector)

    def get_probe(self, probe_id: str) -> Probe:
        """Return a probe by id.

        Raises:
            ProbeNotFoundError: If the probe does not exist.
        """
        with self._storage_call("get_probe", "failed to get probe from storage"):
            return self.store.get_probe(probe_id)

    def create_probe(self, static_url: Any, labels: Any = None) -> Probe:
        """Create a pending probe unless one already exists for the URL.

        Raises:
            InvalidInputError: If static_url or labels are malformed.
            ProbeAlreadyExistsError: If a probe with the same URL hash exists.
        """
        static_url = _validate_static_url(static_url)
        user_labels = _validate_labels(labels)
        url_hash = compute_url_hash(static_url)

        with self._storage_call("probe_with_url_hash_exists", "failed to check for existing probes", expected=()):
            exists = self.store.probe_with_url_hash_exists(url_hash)

        if exists:
            raise ProbeAlreadyExistsError(f'a probe for static_url "{static_url}" already exists')

        probe = Probe(
            id=str(uuid.uuid4()),
            static_url=static_url,
            status=STATUS_PENDING,
            labels=user_labels,
        )

        with self._storage_call("create_probe", "failed to create probe", expected=(ProbeAlreadyExistsError,)):
            created = self.store.create_probe(probe, url_hash)

        logger.info("Successfully created probe %s for %s", created.id, static_url)
        return created

    def update_probe(self, probe_id: str, status: Any = None, labels: Any = None) -> Probe:
        """Apply a status and/or label change to a probe.

        Setting status to "deleted" removes the probe from storage and returns
        the last record with its status and status label set to "deleted".

        Raises:
            ProbeNotFoundError: If the probe does not exist.
            InvalidInputError: If status or labels are malformed.
            ProtectedLabelError: If a system-managed label would be created or changed.
            ConflictError: If the store lost a concurrent write.
        """
        with self._storage_call("get_probe", "failed to get probe from storage for update"):
            current = self.store.get_probe(probe_id)

        if status is not None and status not in UPDATABLE_STATUSES:
            raise InvalidInputError(
                f"invalid status {status!r}, must be one of: {', '.join(UPDATABLE_STATUSES)}"
            )

        merged_labels = dict(current.labels)
        if labels is not None:
            new_labels = _validate_labels(labels)
            validate_protected_labels(new_labels, current.labels)
            merged_labels.update(new_labels)

        updated = Probe(
            id=current.id,
            static_url=current.static_url,
            status=status if status is not None else current.status,
            labels=merged_labels,
        )

        if updated.status == STATUS_DELETED:
            with self._storage_call("delete_probe_storage", "failed to delete probe from storage"):
                self.store.delete_probe_storage(probe_id)
            logger.info("Deleted probe %s on request", probe_id)
            return Probe(
                id=updated.id,
                static_url=updated.static_url,
                status=STATUS_DELETED,
                labels=with_system_labels(merged_labels, STATUS_DELETED),
            )

        with self._storage_call("update_probe", "failed to update probe in storage"):
            result = self.store.update_probe(updated)

        logger.info("Successfully updated probe %s", probe_id)
        return result

    def delete_probe(self, probe_id: str) -> None:
        """Delete a probe according to its status.

        Raises:
            ProbeNotFoundError: If the probe does not exist.
        """
        with self._storage_call("delete_probe", "failed to delete probe from storage"):
            self.store.delete_probe(probe_id)

        logger.info("Successfully processed deletion of probe %s", probe_id)
