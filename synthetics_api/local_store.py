"""File-based probe storage: one JSON file per probe in a directory."""

import json
import logging
import os
from collections.abc import Iterator
from pathlib import Path

from .models import PROBE_URL_HASH_LABEL_KEY, Probe
from .store import (
    InvalidInputError,
    ProbeAlreadyExistsError,
    ProbeNotFoundError,
    ProbeStore,
    ProbeStoreError,
    parse_selector,
    with_system_labels,
)

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "data"

PROBE_FILE_SUFFIX = ".json"
TEMP_FILE_SUFFIX = ".tmp"
WRITE_TEST_FILE = ".write_test"


class LocalProbeStore(ProbeStore):
    """Stores each probe as ``<id>.json`` inside a single directory.

    Writes go to a temporary file in the same directory and are renamed over
    the final path, so readers never see a partially written record. There is
    no cross-process locking: concurrent updates of one probe are
    last-writer-wins.
    """

    def __init__(self, directory: str = DEFAULT_DATA_DIR) -> None:
        """Open (and create if needed) the probe directory.

        Args:
            directory: Directory holding probe files. Empty means DEFAULT_DATA_DIR.

        Raises:
            ProbeStoreError: If the directory cannot be created or is not writable.
        """
        self.directory = Path(directory or DEFAULT_DATA_DIR)

        if self.directory.exists():
            if not self.directory.is_dir():
                raise ProbeStoreError(f"probe store path {str(self.directory)!r} is not a directory")
            logger.info("Using existing local probe store directory %r", str(self.directory))
        else:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ProbeStoreError(f"failed to create probe store directory: {e}") from e
            logger.info("Created local probe store directory %r", str(self.directory))

        test_file = self.directory / WRITE_TEST_FILE
        try:
            test_file.write_text("test", encoding="utf-8")
            test_file.unlink()
        except OSError as e:
            raise ProbeStoreError(f"probe store directory is not writable: {e}") from e

    def _probe_path(self, probe_id: str) -> Path:
        return self.directory / f"{probe_id}{PROBE_FILE_SUFFIX}"

    def _read_probe_file(self, path: Path) -> Probe:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return Probe.from_dict(data)

    def _write_probe_file(self, probe: Probe) -> None:
        """Atomically write a probe file via a temp file and rename."""
        path = self._probe_path(probe.id)
        temp_path = path.with_name(path.name + TEMP_FILE_SUFFIX)

        try:
            data = json.dumps(probe.to_dict(), indent=2)
        except (TypeError, ValueError) as e:
            raise ProbeStoreError(f"failed to marshal probe {probe.id}: {e}") from e

        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(data)
        except OSError as e:
            raise ProbeStoreError(f"failed to write probe file for {probe.id}: {e}") from e

        try:
            os.replace(temp_path, path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ProbeStoreError(f"failed to finalize probe file for {probe.id}: {e}") from e

    def _iter_probe_files(self) -> Iterator[Path]:
        """Yield probe file paths in name order, skipping temp files and directories."""
        try:
            entries = sorted(os.scandir(self.directory), key=lambda entry: entry.name)
        except OSError as e:
            raise ProbeStoreError(f"error scanning probe store directory: {e}") from e

        for entry in entries:
            if not entry.name.endswith(PROBE_FILE_SUFFIX):
                continue
            try:
                if entry.is_dir():
                    continue
            except OSError:
                continue
            yield Path(entry.path)

    def _scan(self) -> Iterator[Probe]:
        """Yield every readable probe; unreadable or malformed files are logged and skipped."""
        skipped = 0
        for path in self._iter_probe_files():
            try:
                yield self._read_probe_file(path)
            except OSError as e:
                logger.warning("Error reading probe file %s: %s", path, e)
                skipped += 1
            except ValueError as e:
                logger.warning("Error unmarshaling probe from file %s: %s", path, e)
                skipped += 1

        if skipped:
            logger.warning("Skipped %d corrupted or unreadable probe files", skipped)

    def list_probes(self, selector: str) -> list[Probe]:
        sel = parse_selector(selector)
        if sel.is_empty():
            return list(self._scan())
        logger.debug("Listing probes matching %s", sel)
        return [probe for probe in self._scan() if sel.matches(probe.labels)]

    def get_probe(self, probe_id: str) -> Probe:
        if not probe_id:
            raise InvalidInputError("probe ID cannot be empty")

        path = self._probe_path(probe_id)
        try:
            return self._read_probe_file(path)
        except FileNotFoundError:
            raise ProbeNotFoundError(probe_id)
        except OSError as e:
            raise ProbeStoreError(f"failed to read probe file for {probe_id}: {e}") from e
        except ValueError as e:
            raise ProbeStoreError(f"failed to unmarshal probe {probe_id}: {e}") from e

    def create_probe(self, probe: Probe, url_hash: str) -> Probe:
        if not probe.id:
            raise InvalidInputError("probe ID cannot be empty")
        if not url_hash:
            raise InvalidInputError("URL hash cannot be empty")

        if self.probe_with_url_hash_exists(url_hash):
            raise ProbeAlreadyExistsError(f"a probe with URL hash {url_hash} already exists")

        if self._probe_path(probe.id).exists():
            raise ProbeAlreadyExistsError(f"probe with ID {probe.id} already exists")

        stored = Probe(
            id=probe.id,
            static_url=probe.static_url,
            status=probe.status,
            labels=with_system_labels(probe.labels, probe.status, url_hash),
        )
        self._write_probe_file(stored)

        logger.info("Created probe %s with URL hash %s", stored.id, url_hash)
        return stored

    def update_probe(self, probe: Probe) -> Probe:
        if not probe.id:
            raise InvalidInputError("probe ID cannot be empty")

        existing = self.get_probe(probe.id)

        labels = with_system_labels(probe.labels, probe.status)
        if PROBE_URL_HASH_LABEL_KEY not in labels and PROBE_URL_HASH_LABEL_KEY in existing.labels:
            labels[PROBE_URL_HASH_LABEL_KEY] = existing.labels[PROBE_URL_HASH_LABEL_KEY]

        stored = Probe(id=probe.id, static_url=probe.static_url, status=probe.status, labels=labels)
        self._write_probe_file(stored)

        logger.info("Updated probe %s", stored.id)
        return stored

    def delete_probe_storage(self, probe_id: str) -> None:
        if not probe_id:
            raise InvalidInputError("probe ID cannot be empty")

        try:
            self._probe_path(probe_id).unlink()
        except FileNotFoundError:
            raise ProbeNotFoundError(probe_id)
        except OSError as e:
            raise ProbeStoreError(f"failed to delete probe file for {probe_id}: {e}") from e

        logger.info("Deleted probe %s", probe_id)

    def probe_with_url_hash_exists(self, url_hash: str) -> bool:
        for probe in self._scan():
            if probe.labels.get(PROBE_URL_HASH_LABEL_KEY) == url_hash:
                return True
        return False
