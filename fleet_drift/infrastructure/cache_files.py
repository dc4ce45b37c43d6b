"""File-backed and in-memory classification cache stores."""

import json
import logging
import os
import threading
from typing import Dict, List, Optional

from fleet_drift.domain.models import ClassificationCacheEntry
from fleet_drift.domain.repository import RepositoryKey

logger = logging.getLogger(__name__)


class InMemoryCacheStore:
    """Dictionary keyed by the exact (owner, name) tuple."""

    def __init__(self):
        self._entries: Dict[RepositoryKey, ClassificationCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: RepositoryKey) -> Optional[ClassificationCacheEntry]:
        with self._lock:
            return self._entries.get(tuple(key))

    def put(self, key: RepositoryKey, entry: ClassificationCacheEntry):
        if entry.key != tuple(key):
            raise ValueError(f"Cache key {key} does not match entry {entry.key}")
        with self._lock:
            self._entries[tuple(key)] = entry

    def delete(self, key: RepositoryKey):
        with self._lock:
            self._entries.pop(tuple(key), None)

    def all_entries(self) -> List[ClassificationCacheEntry]:
        with self._lock:
            return [self._entries[k] for k in sorted(self._entries)]


class JsonFileCacheStore(InMemoryCacheStore):
    """
    Cache persisted as one JSON document, e.g. restored and saved as a CI artifact.

    Records keep owner and name as separate fields, so no key is ever
    reconstructed by splitting a joined string.
    """

    FORMAT_VERSION = 1

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self.load()

    def load(self):
        if not os.path.exists(self.path):
            logger.info(f"No classification cache at {self.path}; starting empty")
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable classification cache {self.path}: {e}")
            return
        if not isinstance(document, dict) or document.get("format_version") != self.FORMAT_VERSION:
            logger.warning(f"Ignoring classification cache {self.path} with unknown format")
            return

        loaded = 0
        for record in document.get("entries", []):
            try:
                entry = ClassificationCacheEntry.from_record(record)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed cache record {record!r}: {e}")
                continue
            self._entries[entry.key] = entry
            loaded += 1
        logger.info(f"Loaded {loaded} classification cache entries from {self.path}")

    def save(self):
        document = {
            "format_version": self.FORMAT_VERSION,
            "entries": [entry.to_record() for entry in self.all_entries()],
        }
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)
        logger.info(f"Saved {len(document['entries'])} classification cache entries to {self.path}")
