"""
Key-value stores satisfying the persistence contract used by the history ledger:
`get(key, default)`, `set(key, value)` and `delete(key)`.
"""

import copy
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from .errors import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MAX_VALUE_BYTES = 5 * 1024 * 1024
PRUNE_TO_ENTRIES = 10


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...
    def set(self, key: str, value: Any) -> None: ...
    def delete(self, key: str) -> None: ...


def _check_key(key):
    if not isinstance(key, str):
        raise TypeError("key must be str, not {}".format(type(key).__name__))


class MemoryStore:
    """In-process store; values are copied in and out so callers cannot alias stored data."""

    def __init__(self, initial: dict = None):
        self._data = copy.deepcopy(initial) if initial else {}

    def get(self, key, default=None):
        _check_key(key)
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key, value):
        _check_key(key)
        self._data[key] = copy.deepcopy(value)

    def delete(self, key):
        _check_key(key)
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class JsonFileStore:
    """
    One JSON file per key under `root`.

    Values are wrapped with a schema version and a write timestamp. A value that would
    exceed `max_bytes` is pruned to its most recent entries when it is a list, and
    rejected otherwise.
    """

    def __init__(self, root: Path, max_bytes: int = MAX_VALUE_BYTES):
        self.root = Path(root)
        self.max_bytes = max_bytes
        self.lock = threading.Lock()

    def _path(self, key):
        _check_key(key)
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self.root / f"{safe}.json"

    def get(self, key, default=None):
        path = self._path(key)
        if not path.exists():
            return default
        try:
            with open(path, 'r', encoding='utf-8') as f:
                wrapped = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {key!r}: {e}") from e
        if isinstance(wrapped, dict) and "version" in wrapped and "data" in wrapped:
            if wrapped["version"] != SCHEMA_VERSION:
                logger.warning("No migration path from v%s to v%s for %r", wrapped["version"], SCHEMA_VERSION, key)
            return wrapped["data"]
        return wrapped

    def set(self, key, value):
        path = self._path(key)
        try:
            serialized = self._serialize(value)
            if len(serialized.encode('utf-8')) > self.max_bytes:
                serialized = self._prune(key, value)
            with self.lock:
                os.makedirs(self.root, exist_ok=True)
                with open(path, 'w', encoding='utf-8') as f:
                    f.write(serialized)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {key!r}: {e}") from e

    def delete(self, key):
        path = self._path(key)
        try:
            with self.lock:
                if path.exists():
                    os.remove(path)
        except OSError as e:
            raise PersistenceError(f"Failed to delete {key!r}: {e}") from e

    def _serialize(self, value):
        return json.dumps({'version': SCHEMA_VERSION, 'timestamp': time.time(), 'data': value}, indent=2)

    def _prune(self, key, value):
        if not isinstance(value, list) or len(value) <= PRUNE_TO_ENTRIES:
            raise PersistenceError(f"Value for {key!r} exceeds {self.max_bytes} bytes")
        trimmed = value[-PRUNE_TO_ENTRIES:]
        serialized = self._serialize(trimmed)
        if len(serialized.encode('utf-8')) > self.max_bytes:
            raise PersistenceError(f"Value for {key!r} exceeds {self.max_bytes} bytes even after pruning")
        logger.warning("Store quota exceeded for %r, trimmed from %d to %d entries", key, len(value), len(trimmed))
        return serialized
