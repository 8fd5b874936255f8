"""Redis connection shared by the record store and the channel transport."""

import asyncio
import contextlib
import json
from collections.abc import Callable, Coroutine
from typing import Any

import redis.asyncio as redis
import structlog

from megillah_live.crypto import RecordCipher

logger = structlog.get_logger()

JsonHandler = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
FailureHandler = Callable[[Exception], Coroutine[Any, Any, None]]


class ChannelListener:
    """Feeds one channel's messages to a handler from a background task.

    Each listener holds its own pubsub connection, so session channels can be
    opened and stopped independently of each other.
    """

    def __init__(self, channel: str, pubsub: Any) -> None:
        self.channel = channel
        self._pubsub = pubsub
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return not self._stopped and self._task is not None and not self._task.done()

    def start(self, handler: JsonHandler, on_failure: FailureHandler | None = None) -> None:
        """Deliver decoded messages to ``handler`` one at a time."""
        self._task = asyncio.create_task(self._pump(handler, on_failure))

    async def _pump(self, handler: JsonHandler, on_failure: FailureHandler | None) -> None:
        try:
            async for raw in self._pubsub.listen():
                if self._stopped:
                    return
                # subscribe/unsubscribe confirmations share the stream
                if raw["type"] == "message":
                    await self._deliver(raw["data"], handler)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.exception("Channel listener died", channel=self.channel)
            if on_failure is not None and not self._stopped:
                await on_failure(e)

    async def _deliver(self, data: str, handler: JsonHandler) -> None:
        try:
            decoded = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping non-JSON channel message", channel=self.channel)
            return

        try:
            await handler(decoded)
        except Exception:
            logger.exception("Channel handler failed", channel=self.channel)

    async def stop(self) -> None:
        """Cancel the listener and release its pubsub connection. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except redis.RedisError:
            logger.warning("Pubsub did not close cleanly", channel=self.channel)

        logger.info("Stopped listening", channel=self.channel)


class RedisConnection:
    """One Redis connection for session records and channel traffic.

    Record hash values pass through ``cipher`` when one is configured;
    channel messages are plain JSON.
    """

    def __init__(self, url: str, cipher: RecordCipher | None = None) -> None:
        self.url = url
        self.cipher = cipher
        self._redis: Any = None

    @property
    def redis(self) -> Any:
        """The open ``redis.asyncio`` client."""
        if self._redis is None:
            raise RuntimeError("Redis connection is not open")
        return self._redis

    async def open(self) -> None:
        """Create the client. Calling it again while open does nothing."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(  # type: ignore[no-untyped-call]
            self.url,
            decode_responses=True,
        )
        logger.info("Redis connection opened", url=self.url)

    async def close(self) -> None:
        """Close the client if it is open."""
        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None
        logger.info("Redis connection closed", url=self.url)

    # Record hashes

    async def read_hash(self, key: str) -> dict[str, str]:
        """Read every field of a record hash.

        Args:
            key: Redis key of the hash.

        Returns:
            Field values with any sealing removed, or an empty dict if the key
            does not exist.
        """
        fields = await self.redis.hgetall(key)
        if not fields:
            return {}
        return self.cipher.unseal_all(fields) if self.cipher else dict(fields)

    async def read_field(self, key: str, field: str) -> str | None:
        """Read one field of a record hash.

        Args:
            key: Redis key of the hash.
            field: Field name.

        Returns:
            The unsealed value, or None if the field is absent.
        """
        value: str | None = await self.redis.hget(key, field)
        if value is None or self.cipher is None:
            return value
        return self.cipher.unseal(value)

    async def write_hash(self, key: str, fields: dict[str, str]) -> None:
        """Set fields on a record hash, sealing values when a cipher is configured.

        Args:
            key: Redis key of the hash.
            fields: Field names and plaintext values. Other fields are kept.
        """
        if self.cipher is not None:
            fields = self.cipher.seal_all(fields)
        await self.redis.hset(key, mapping=fields)

    # Channels

    async def publish_json(self, channel: str, data: dict[str, Any]) -> int:
        """Publish ``data`` as JSON; returns how many subscribers received it."""
        receivers: int = await self.redis.publish(channel, json.dumps(data))
        return receivers

    async def listen(
        self,
        channel: str,
        handler: JsonHandler,
        on_failure: FailureHandler | None = None,
    ) -> ChannelListener:
        """Subscribe to ``channel`` and start feeding its messages to ``handler``.

        ``on_failure`` is awaited if the listener dies; stop the returned
        listener to unsubscribe.
        """
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)

        listener = ChannelListener(channel, pubsub)
        listener.start(handler, on_failure)
        logger.info("Listening on channel", channel=channel)
        return listener
