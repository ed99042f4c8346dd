"""Kubernetes probe storage: one labeled ConfigMap per probe."""

import json
import logging

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .models import PROBE_URL_HASH_LABEL_KEY, Probe
from .store import (
    ConflictError,
    InvalidInputError,
    InvalidSelectorError,
    ProbeAlreadyExistsError,
    ProbeNotFoundError,
    ProbeStore,
    ProbeStoreError,
    parse_selector,
    with_system_labels,
)

logger = logging.getLogger(__name__)

CONFIGMAP_NAME_FORMAT = "probe-config-{}"
PROBE_DATA_KEY = "probe-config.json"

HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_UNPROCESSABLE_ENTITY = 422

# Failures below the HTTP layer: refused connections, timeouts, exhausted retries
TRANSPORT_ERRORS = (HTTPError, OSError)


def configmap_name(probe_id: str) -> str:
    """Return the deterministic ConfigMap name for a probe id."""
    return CONFIGMAP_NAME_FORMAT.format(probe_id)


def _probe_from_configmap(cm: client.V1ConfigMap) -> Probe:
    """Decode the probe payload, taking labels from the ConfigMap metadata.

    Raises:
        ValueError: If the payload is missing or malformed.
    """
    data = cm.data or {}
    payload = data.get(PROBE_DATA_KEY)
    if payload is None:
        raise ValueError(f"configmap has no {PROBE_DATA_KEY!r} key")

    probe = Probe.from_dict(json.loads(payload))
    if cm.metadata is not None and cm.metadata.labels:
        return Probe(
            id=probe.id,
            static_url=probe.static_url,
            status=probe.status,
            labels=dict(cm.metadata.labels),
        )
    return probe


class KubernetesProbeStore(ProbeStore):
    """Stores probes as ConfigMaps in a single namespace.

    Label selection is delegated to the API server. Updates are
    read-modify-write using the ConfigMap resourceVersion, so a concurrent
    writer causes ConflictError rather than a silent overwrite. Conflicts are
    not retried here.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        namespace: str,
        version_api: client.VersionApi | None = None,
    ) -> None:
        """Initialize the store.

        The namespace is assumed to exist: namespaced RBAC does not allow a
        cluster-level namespace lookup.

        Args:
            core_api: CoreV1 API client used for ConfigMap operations.
            namespace: Namespace holding the probe ConfigMaps.
            version_api: Optional client used for readiness checks.
        """
        self.core_api = core_api
        self.namespace = namespace
        self.version_api = version_api
        logger.info("Initializing Kubernetes probe store in namespace %r", namespace)

    def list_probes(self, selector: str) -> list[Probe]:
        parse_selector(selector)

        try:
            configmaps = self.core_api.list_namespaced_config_map(self.namespace, label_selector=selector)
        except ApiException as e:
            if e.status == HTTP_BAD_REQUEST:
                raise InvalidSelectorError(f"label selector rejected by API server: {e.reason}") from e
            raise ProbeStoreError(f"failed to list config maps: {e.reason}") from e
        except TRANSPORT_ERRORS as e:
            raise ProbeStoreError(f"failed to list config maps: {e}") from e

        probes: list[Probe] = []
        for cm in configmaps.items:
            if not cm.data or PROBE_DATA_KEY not in cm.data:
                continue
            try:
                probes.append(_probe_from_configmap(cm))
            except ValueError as e:
                logger.warning("Error unmarshaling probe from configmap %s: %s", cm.metadata.name, e)
        return probes

    def _read_configmap(self, probe_id: str) -> client.V1ConfigMap:
        try:
            return self.core_api.read_namespaced_config_map(configmap_name(probe_id), self.namespace)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                raise ProbeNotFoundError(probe_id) from e
            raise ProbeStoreError(f"failed to get configmap for probe {probe_id}: {e.reason}") from e
        except TRANSPORT_ERRORS as e:
            raise ProbeStoreError(f"failed to get configmap for probe {probe_id}: {e}") from e

    def get_probe(self, probe_id: str) -> Probe:
        if not probe_id:
            raise InvalidInputError("probe ID cannot be empty")

        cm = self._read_configmap(probe_id)
        try:
            return _probe_from_configmap(cm)
        except ValueError as e:
            raise ProbeStoreError(f"failed to unmarshal probe {probe_id} from configmap: {e}") from e

    def create_probe(self, probe: Probe, url_hash: str) -> Probe:
        if not probe.id:
            raise InvalidInputError("probe ID cannot be empty")
        if not url_hash:
            raise InvalidInputError("URL hash cannot be empty")

        if self.probe_with_url_hash_exists(url_hash):
            raise ProbeAlreadyExistsError(f"a probe with URL hash {url_hash} already exists")

        stored = Probe(
            id=probe.id,
            static_url=probe.static_url,
            status=probe.status,
            labels=with_system_labels(probe.labels, probe.status, url_hash),
        )
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=configmap_name(stored.id),
                namespace=self.namespace,
                labels=dict(stored.labels),
            ),
            data={PROBE_DATA_KEY: json.dumps(stored.to_dict())},
        )

        try:
            self.core_api.create_namespaced_config_map(self.namespace, body)
        except ApiException as e:
            if e.status == HTTP_CONFLICT:
                raise ProbeAlreadyExistsError(f"probe with ID {stored.id} already exists") from e
            if e.status == HTTP_UNPROCESSABLE_ENTITY:
                raise InvalidInputError(f"probe {stored.id} rejected by API server: {e.reason}") from e
            raise ProbeStoreError(f"failed to create configmap for probe {stored.id}: {e.reason}") from e
        except TRANSPORT_ERRORS as e:
            raise ProbeStoreError(f"failed to create configmap for probe {stored.id}: {e}") from e

        logger.info("Created probe %s with URL hash %s", stored.id, url_hash)
        return stored

    def update_probe(self, probe: Probe) -> Probe:
        if not probe.id:
            raise InvalidInputError("probe ID cannot be empty")

        cm = self._read_configmap(probe.id)
        name = configmap_name(probe.id)

        # Overlay onto the existing labels so unrelated ones are kept
        labels = dict(cm.metadata.labels or {})
        labels.update(probe.labels or {})
        labels = with_system_labels(labels, probe.status)

        stored = Probe(id=probe.id, static_url=probe.static_url, status=probe.status, labels=labels)
        cm.metadata.labels = labels
        if cm.data is None:
            cm.data = {}
        cm.data[PROBE_DATA_KEY] = json.dumps(stored.to_dict())

        try:
            updated = self.core_api.replace_namespaced_config_map(name, self.namespace, cm)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                raise ProbeNotFoundError(probe.id) from e
            if e.status == HTTP_CONFLICT:
                raise ConflictError(f"probe {probe.id} was modified concurrently: {e.reason}") from e
            if e.status == HTTP_UNPROCESSABLE_ENTITY:
                raise InvalidInputError(f"probe {probe.id} rejected by API server: {e.reason}") from e
            raise ProbeStoreError(f"failed to update configmap {name}: {e.reason}") from e
        except TRANSPORT_ERRORS as e:
            raise ProbeStoreError(f"failed to update configmap {name}: {e}") from e

        logger.info("Updated probe %s", probe.id)
        try:
            return _probe_from_configmap(updated)
        except ValueError as e:
            raise ProbeStoreError(f"failed to unmarshal probe from updated configmap {name}: {e}") from e

    def delete_probe_storage(self, probe_id: str) -> None:
        if not probe_id:
            raise InvalidInputError("probe ID cannot be empty")

        logger.info("Deleting probe configmap: %s", probe_id)
        try:
            self.core_api.delete_namespaced_config_map(configmap_name(probe_id), self.namespace)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                raise ProbeNotFoundError(probe_id) from e
            raise ProbeStoreError(f"failed to delete configmap for probe {probe_id}: {e.reason}") from e
        except TRANSPORT_ERRORS as e:
            raise ProbeStoreError(f"failed to delete configmap for probe {probe_id}: {e}") from e

    def probe_with_url_hash_exists(self, url_hash: str) -> bool:
        hash_selector = f"{PROBE_URL_HASH_LABEL_KEY}={url_hash}"
        try:
            existing = self.core_api.list_namespaced_config_map(
                self.namespace, label_selector=hash_selector, limit=1
            )
        except ApiException as e:
            raise ProbeStoreError(f"failed to check for existing probes: {e.reason}") from e
        except TRANSPORT_ERRORS as e:
            raise ProbeStoreError(f"failed to check for existing probes: {e}") from e
        return len(existing.items) > 0

    def check_ready(self) -> bool:
        if self.version_api is None:
            return True
        try:
            self.version_api.get_code()
        except Exception as e:
            logger.warning("Readiness check failed: could not connect to Kubernetes API server: %s", e)
            return False
        return True
