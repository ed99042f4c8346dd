"""Protection of system-managed probe labels."""

from collections.abc import Mapping

from .models import (
    BASE_APP_LABEL_KEY,
    PRIVATE_PROBE_LABEL_KEY,
    PROBE_STATUS_LABEL_KEY,
    PROBE_URL_HASH_LABEL_KEY,
)

PROTECTED_LABEL_KEYS = frozenset(
    {
        BASE_APP_LABEL_KEY,
        PROBE_STATUS_LABEL_KEY,
        PROBE_URL_HASH_LABEL_KEY,
        PRIVATE_PROBE_LABEL_KEY,
    }
)


class ProtectedLabelError(Exception):
    """Raised when a caller tries to create or change a system-managed label."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(message)
        self.key = key


def validate_protected_labels(new: Mapping[str, str], old: Mapping[str, str] | None) -> None:
    """Reject label updates that introduce or alter protected keys.

    A protected key in ``new`` is accepted only if ``old`` already holds it with
    the identical value. Protected keys missing from ``new`` are fine because
    updates merge onto the existing labels.

    Args:
        new: Labels proposed by the caller.
        old: Labels currently stored on the probe.

    Raises:
        ProtectedLabelError: On the first offending key, in sorted key order.
    """
    old = old or {}
    for key in sorted(new):
        if key not in PROTECTED_LABEL_KEYS:
            continue
        if key not in old:
            raise ProtectedLabelError(key, f"creation of system-managed label '{key}' is forbidden")
        if old[key] != new[key]:
            raise ProtectedLabelError(key, f"modification of system-managed label '{key}' is forbidden")
