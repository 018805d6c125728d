"""JSON-file registry mapping media ids to MediaRecord metadata.

The whole mapping is one JSON document, rewritten on every change. All
read-modify-write cycles go through one lock, and writes land via a temporary
file plus ``os.replace`` so readers never see a half-written document.

Corrupt persisted state loads as an empty mapping (fail-open). The unreadable
file is copied aside first so the next save does not destroy it.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from vhoster.domain.errors import NotFound, RegistryCorruption, StorageInitError
from vhoster.domain.models import MediaRecord


class MetadataRegistry:
    """Thread-safe, file-persisted id -> MediaRecord mapping."""

    def __init__(self, data_file: Path):
        self.data_file = Path(data_file)
        self._lock = threading.RLock()
        self._logger = logging.getLogger(__name__)

    def ensure_ready(self) -> None:
        """Creates the data file (``{}``) if it does not exist yet."""
        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)
            if not self.data_file.exists():
                self.data_file.write_text("{}", encoding="utf-8")
        except OSError as exc:
            raise StorageInitError(f"Cannot create metadata file {self.data_file}: {exc}") from exc

    def _parse(self, text: str) -> Dict[str, MediaRecord]:
        try:
            raw = json.loads(text or "{}")
        except ValueError as exc:
            raise RegistryCorruption(str(exc)) from exc
        if not isinstance(raw, dict):
            raise RegistryCorruption(f"Top-level JSON value is {type(raw).__name__}, expected object")
        try:
            return {media_id: MediaRecord.model_validate(entry) for media_id, entry in raw.items()}
        except ValidationError as exc:
            raise RegistryCorruption(str(exc)) from exc

    def _backup_corrupt(self) -> None:
        backup = self.data_file.with_name(f"{self.data_file.name}.corrupt-{int(time.time())}")
        try:
            shutil.copy2(self.data_file, backup)
        except OSError as exc:
            self._logger.warning(f"REGISTRY_CORRUPT: could not back up {self.data_file}: {exc}")
            return
        self._logger.warning(f"REGISTRY_CORRUPT: unreadable {self.data_file}, copy kept at {backup.name}")

    def load(self) -> Dict[str, MediaRecord]:
        """Returns the full mapping; unreadable or corrupt state yields ``{}``."""
        with self._lock:
            try:
                text = self.data_file.read_text(encoding="utf-8")
            except FileNotFoundError:
                return {}
            except OSError as exc:
                self._logger.warning(f"REGISTRY_UNREADABLE: {self.data_file}: {exc}")
                return {}
            try:
                return self._parse(text)
            except RegistryCorruption as exc:
                self._logger.debug(f"Registry parse error: {exc}")
                self._backup_corrupt()
                return {}

    def save(self, records: Dict[str, MediaRecord]) -> None:
        """Serializes the entire mapping and atomically replaces the data file."""
        payload: Dict[str, Any] = {media_id: record.to_payload() for media_id, record in records.items()}
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.data_file.name}.", dir=str(self.data_file.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_name, self.data_file)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def get(self, media_id: str) -> Optional[MediaRecord]:
        return self.load().get(media_id)

    def insert(self, record: MediaRecord) -> None:
        with self._lock:
            records = self.load()
            records[record.id] = record
            self.save(records)

    def update(self, media_id: str, **changes: Any) -> MediaRecord:
        """Applies ``changes`` (attribute names) to one record in a single save."""
        with self._lock:
            records = self.load()
            current = records.get(media_id)
            if current is None:
                raise NotFound(f"Unknown media id: {media_id}")
            updated = current.model_copy(update=changes)
            records[media_id] = updated
            self.save(records)
            return updated
