"""Durable local storage and the pending-session record.

A leader who has just created a session but not started broadcasting can
restart without losing the code: the pair is kept in a small JSON key-value
file until the first broadcast or an explicit abandon.
"""

import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from megillah_live.config import DEFAULT_CONFIG_DIR
from megillah_live.models import PendingSession

logger = structlog.get_logger()

DEFAULT_STORAGE_PATH = DEFAULT_CONFIG_DIR / "storage.json"
PENDING_SESSION_KEY = "megillah-pending-session"


class LocalStorage:
    """String key-value storage persisted as a JSON object on disk."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or DEFAULT_STORAGE_PATH

    def get_item(self, key: str) -> str | None:
        """Look up a stored value.

        Args:
            key: Storage key.

        Returns:
            The stored string, or None if the key is absent or the file is unreadable.
        """
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> bool:
        """Store a value under ``key``.

        Args:
            key: Storage key.
            value: String to store.

        Returns:
            True if the file was written, False if the write failed and was logged.
        """
        data = self._read()
        data[key] = value
        return self._write(data)

    def remove_item(self, key: str) -> bool:
        """Delete ``key`` if present. Returns False only when a rewrite failed."""
        data = self._read()
        if data.pop(key, None) is None:
            return True
        return self._write(data)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable local storage", path=str(self.path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning("Failed to write local storage", path=str(self.path), error=str(e))
            return False
        return True


class PendingSessionPersistence:
    """Keeps a just-created session's code and password across restarts."""

    def __init__(self, storage: LocalStorage, key: str = PENDING_SESSION_KEY) -> None:
        self._storage = storage
        self._key = key

    def save(self, code: str, password: str) -> None:
        """Store the pair, replacing any previous one.

        A failed write is logged by the storage and otherwise ignored; the
        session itself is unaffected.
        """
        if self._storage.set_item(
            self._key, PendingSession(code=code, password=password).model_dump_json()
        ):
            logger.debug("Pending session saved", code=code)

    def load(self) -> PendingSession | None:
        """Return the stored pair, or None if nothing valid is stored."""
        raw = self._storage.get_item(self._key)
        if raw is None:
            return None
        try:
            return PendingSession.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed pending session")
            return None

    def clear(self) -> None:
        """Forget the stored pair, if any."""
        if self._storage.remove_item(self._key):
            logger.debug("Pending session cleared")
