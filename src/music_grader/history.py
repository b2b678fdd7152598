"""
Append-only ledger of past analysis summaries, kept as a size-bounded list in a key-value store.

History is best-effort: store failures are logged and never propagate out of
`append`, `entries` or `clear`. Only malformed imports raise.
"""

import json
import logging
from typing import Any, Optional

from .config import DEFAULT_MAX_HISTORY, HISTORY_KEY
from .errors import ValidationError
from .mg_types import HistoryEntry
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


def _validate_entry(entry: Any) -> None:
    if not isinstance(entry, dict):
        raise ValidationError("Invalid history entry format: expected an object")
    percentage = entry.get("percentage")
    if (not entry.get("exerciseId") or not entry.get("timestamp")
            or isinstance(percentage, bool) or not isinstance(percentage, (int, float))):
        raise ValidationError("Invalid history entry format")


class HistoryLedger:
    def __init__(self, store: KeyValueStore, key: str = HISTORY_KEY, max_size: int = DEFAULT_MAX_HISTORY):
        if max_size < 1:
            raise ValidationError("History max size must be at least 1")
        self.store = store
        self.key = key
        self.max_size = max_size

    def _load(self) -> list[dict]:
        raw = self.store.get(self.key, [])
        return list(raw) if isinstance(raw, list) else []

    def append(self, entry: HistoryEntry) -> bool:
        """Append `entry`, evicting the oldest entries beyond `max_size`. Returns False on store failure."""
        try:
            history = self._load()
            history.append(entry.to_dict())
            if len(history) > self.max_size:
                del history[:len(history) - self.max_size]
            self.store.set(self.key, history)
            return True
        except Exception as e:
            logger.warning("Failed to store history: %s", e)
            return False

    def entries(self, exercise_id: Optional[str] = None) -> list[dict]:
        try:
            history = self._load()
        except Exception as e:
            logger.warning("Failed to get history: %s", e)
            return []
        if exercise_id:
            return [h for h in history if h.get("exerciseId") == exercise_id]
        return history

    def clear(self, exercise_id: Optional[str] = None) -> bool:
        try:
            if exercise_id:
                remaining = [h for h in self._load() if h.get("exerciseId") != exercise_id]
                self.store.set(self.key, remaining)
                logger.info("History cleared for exercise %s", exercise_id)
            else:
                self.store.delete(self.key)
                logger.info("All history cleared")
            return True
        except Exception as e:
            logger.warning("Failed to clear history: %s", e)
            return False

    def export_json(self) -> str:
        return json.dumps(self.entries(), indent=2)

    def import_json(self, json_data: str) -> int:
        """
        Replace the ledger with the entries of a JSON array.

        Every entry is validated before anything is written, so a malformed import leaves
        the ledger untouched.

        Returns:
            int: Number of entries written (0 if the store rejected the write).

        Raises:
            ValidationError: if the payload is not a JSON array of entries carrying an
                exerciseId, a timestamp and a numeric percentage.
        """
        try:
            history = json.loads(json_data)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Import failed: {e}") from e
        if not isinstance(history, list):
            raise ValidationError("Import failed: expected a JSON array")
        for entry in history:
            _validate_entry(entry)

        if len(history) > self.max_size:
            history = history[-self.max_size:]
        try:
            self.store.set(self.key, history)
        except Exception as e:
            logger.warning("Failed to import history: %s", e)
            return 0
        logger.info("History imported (%d entries)", len(history))
        return len(history)
