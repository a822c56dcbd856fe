"""Persistence backends for the durable work queue.

The queue only needs two operations, ``load`` and ``save`` of the full
item list, so any key-value or file store can back it.

Backends:
    JsonFileStorage: Atomic JSON file with rotating backups.
    MemoryStorage: Process-local list (tests, ephemeral runs).
"""

import copy
import logging
import time
from typing import Any, Dict, List, Protocol

from verifier.exceptions import StorageError
from verifier.utils import safe_json_read, safe_json_write

logger = logging.getLogger(__name__)


class QueueStorage(Protocol):
    """Load/save contract used by :class:`DurableWorkQueue`."""

    def load(self) -> List[Dict[str, Any]]:
        ...

    def save(self, items: List[Dict[str, Any]]) -> None:
        ...


class JsonFileStorage:
    """Queue storage in a single JSON document.

    Layout::

        {"items": [...], "timestamp": 1700000000.0}

    Writes go through :func:`safe_json_write` so a crash mid-write never
    leaves a truncated file; reads fall back to the newest readable
    backup.
    """

    def __init__(self, filepath: str, max_backups: int = 3) -> None:
        self.filepath = filepath
        self.max_backups = max_backups

    def load(self) -> List[Dict[str, Any]]:
        data = safe_json_read(self.filepath, self.max_backups)
        if data is None:
            return []
        items = data.get("items", []) if isinstance(data, dict) else []
        if not isinstance(items, list):
            logger.warning("Queue file %s has no item list", self.filepath)
            return []
        return items

    def save(self, items: List[Dict[str, Any]]) -> None:
        try:
            safe_json_write(
                self.filepath,
                {"items": items, "timestamp": time.time()},
                self.max_backups,
            )
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Could not write {self.filepath}: {e}") from e


class MemoryStorage:
    """In-memory storage.  Survives queue re-creation, not the process."""

    def __init__(self) -> None:
        self.items: List[Dict[str, Any]] = []
        self.save_count = 0

    def load(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.items)

    def save(self, items: List[Dict[str, Any]]) -> None:
        self.items = copy.deepcopy(items)
        self.save_count += 1
