"""Session record persistence.

A session record maps a six-digit code to the leader password plus the
display settings the leader has shared so far. The controller only needs to
insert a record and read it back; settings updates are best-effort.
"""

import json
from datetime import datetime
from typing import Any, Protocol

import redis.asyncio as redis
import structlog

from megillah_live.exceptions import StoreError
from megillah_live.models import SessionRecord
from megillah_live.redis_client import RedisConnection

logger = structlog.get_logger()


class SessionRecordStore(Protocol):
    """Protocol for session record backends."""

    async def insert(self, record: SessionRecord) -> None: ...
    async def fetch(self, code: str) -> SessionRecord | None: ...
    async def fetch_password(self, code: str) -> str | None: ...
    async def update_settings(self, code: str, updates: dict[str, Any]) -> None: ...


class RedisSessionStore:
    """Session records kept as Redis hashes.

    Each record lives at ``<key_prefix><code>`` with fields ``password``,
    ``settings`` (JSON) and ``created_at``. Inserting an existing code
    overwrites it; codes are random and collisions are not checked.
    """

    def __init__(self, client: RedisConnection, key_prefix: str = "megillah:session:") -> None:
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, code: str) -> str:
        return f"{self._key_prefix}{code}"

    async def insert(self, record: SessionRecord) -> None:
        """Store a new session record.

        Args:
            record: Record to write under its code.

        Raises:
            StoreError: If Redis rejects the write.
        """
        try:
            await self._client.write_hash(
                self._key(record.code),
                {
                    "password": record.password,
                    "settings": json.dumps(record.settings, default=str),
                    "created_at": record.created_at.isoformat(),
                },
            )
        except redis.RedisError as e:
            logger.error("Failed to insert session record", code=record.code, error=str(e))
            raise StoreError(str(e)) from e

        logger.info("Session record created", code=record.code)

    async def fetch(self, code: str) -> SessionRecord | None:
        """Fetch the full record for a code, or None if there is none.

        Args:
            code: Six-digit session code.

        Returns:
            The record, or None when no record with a password exists.

        Raises:
            StoreError: If Redis cannot be read.
        """
        try:
            data = await self._client.read_hash(self._key(code))
        except redis.RedisError as e:
            logger.error("Failed to fetch session record", code=code, error=str(e))
            raise StoreError(str(e)) from e

        if not data or "password" not in data:
            return None

        record = SessionRecord(
            code=code,
            password=data["password"],
            settings=self._decode_settings(code, data.get("settings")),
        )
        if data.get("created_at"):
            record.created_at = datetime.fromisoformat(data["created_at"])
        return record

    async def fetch_password(self, code: str) -> str | None:
        """Fetch only the stored password for a code.

        Raises:
            StoreError: If Redis cannot be read.
        """
        try:
            return await self._client.read_field(self._key(code), "password")
        except redis.RedisError as e:
            logger.error("Failed to fetch session password", code=code, error=str(e))
            raise StoreError(str(e)) from e

    async def update_settings(self, code: str, updates: dict[str, Any]) -> None:
        """Merge ``updates`` into the record's shared settings.

        Args:
            code: Six-digit session code.
            updates: Settings to overwrite; other stored settings are kept.

        Raises:
            StoreError: If Redis cannot be read or written.
        """
        try:
            current = await self._client.read_field(self._key(code), "settings")
            settings = self._decode_settings(code, current)
            settings.update(updates)
            await self._client.write_hash(
                self._key(code), {"settings": json.dumps(settings, default=str)}
            )
        except redis.RedisError as e:
            logger.warning("Failed to update session settings", code=code, error=str(e))
            raise StoreError(str(e)) from e

    @staticmethod
    def _decode_settings(code: str, raw: str | None) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            settings = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid settings JSON in session record", code=code)
            return {}
        return settings if isinstance(settings, dict) else {}
