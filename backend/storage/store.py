"""JSON-file backed key-value store that survives process restarts."""

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Persists a flat dict of JSON-serializable values.

    Every write is flushed to disk immediately. Pass ``path=None`` for a
    purely in-memory store.
    """

    def __init__(self, path: Path | None = None):
        self._path = path
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return

        try:
            self._data = json.loads(self._path.read_text(encoding="utf-8"))
            logger.info(f"Loaded {len(self._data)} keys from {self._path}")
        except Exception as e:
            logger.error(f"Failed to load store {self._path}: {e}")
            self._data = {}

    def _save(self) -> None:
        if self._path is None:
            return

        # Write to a sibling file first so a crash never leaves half a JSON document
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._save()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._save()

    def __contains__(self, key: str) -> bool:
        return key in self._data
