"""Data models for probe records."""

import hashlib
from dataclasses import dataclass, field
from typing import Any

# Probe statuses persisted by the stores
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_FAILED = "failed"
STATUS_TERMINATING = "terminating"

# Deletion intent accepted on update requests only, never persisted
STATUS_DELETED = "deleted"

PROBE_STATUSES = (STATUS_PENDING, STATUS_ACTIVE, STATUS_FAILED, STATUS_TERMINATING)

# System labels injected by the stores
BASE_APP_LABEL_KEY = "app"
BASE_APP_LABEL_VALUE = "rhobs-synthetics-probe"
PROBE_STATUS_LABEL_KEY = "rhobs-synthetics/status"
PROBE_URL_HASH_LABEL_KEY = "rhobs-synthetics/static-url-hash"

# Marks a probe as targeting a private endpoint; set on create only
PRIVATE_PROBE_LABEL_KEY = "private"

BASE_SELECTOR = f"{BASE_APP_LABEL_KEY}={BASE_APP_LABEL_VALUE}"

# Kubernetes label values are capped at 63 characters
URL_HASH_LENGTH = 63


class ProbeFormatError(ValueError):
    """Raised when a serialized probe record is malformed."""

    pass


def compute_url_hash(static_url: str) -> str:
    """Return the truncated SHA-256 hex digest used as the URL uniqueness key."""
    digest = hashlib.sha256(static_url.encode("utf-8")).hexdigest()
    return digest[:URL_HASH_LENGTH]


@dataclass(frozen=True)
class Probe:
    """A synthetic monitoring target.

    Attributes:
        id: UUID string assigned by the service at creation time.
        static_url: The monitored endpoint URL.
        status: One of PROBE_STATUSES (STATUS_DELETED only in update responses).
        labels: User labels plus the system labels injected by the store.
    """

    id: str
    static_url: str
    status: str = STATUS_PENDING
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON-serializable API/storage representation."""
        data: dict[str, Any] = {
            "id": self.id,
            "static_url": self.static_url,
            "status": self.status,
        }
        if self.labels:
            data["labels"] = dict(self.labels)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Probe":
        """Build a Probe from its JSON representation.

        Raises:
            ProbeFormatError: If required fields are missing or mistyped.
        """
        if not isinstance(data, dict):
            raise ProbeFormatError("probe record must be a JSON object")

        for key in ("id", "static_url", "status"):
            if not isinstance(data.get(key), str):
                raise ProbeFormatError(f"probe record field '{key}' must be a string")

        labels = data.get("labels")
        if labels is None:
            labels = {}
        if not isinstance(labels, dict):
            raise ProbeFormatError("probe record field 'labels' must be an object")
        for key, value in labels.items():
            if not isinstance(value, str):
                raise ProbeFormatError(f"label '{key}' must have a string value")

        return cls(
            id=data["id"],
            static_url=data["static_url"],
            status=data["status"],
            labels=dict(labels),
        )
