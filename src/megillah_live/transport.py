"""Named publish/subscribe channels for live sessions.

Delivery is at-most-once with no acknowledgment and no ordering across
senders. Each transport instance has a random client id stamped on every
envelope it publishes so a channel can skip its own broadcasts.
"""

import inspect
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from megillah_live.exceptions import TransportError
from megillah_live.models import BroadcastEnvelope, MessageType
from megillah_live.redis_client import ChannelListener, FailureHandler, RedisConnection

logger = structlog.get_logger()

MessageHandler = Callable[[dict[str, Any]], Awaitable[None] | None]
TransportErrorHandler = Callable[[TransportError], Awaitable[None]]


class ChannelHandle(Protocol):
    """An open channel."""

    name: str

    @property
    def closed(self) -> bool: ...

    def on(self, event: MessageType, handler: MessageHandler) -> None: ...
    async def send(self, event: MessageType, payload: dict[str, Any]) -> None: ...
    async def close(self) -> None: ...


class ChannelTransport(Protocol):
    """Protocol for channel transports."""

    async def open(
        self,
        name: str,
        exclude_self: bool = True,
        on_error: TransportErrorHandler | None = None,
    ) -> ChannelHandle: ...

    async def close(self, handle: ChannelHandle) -> None: ...


class RedisChannel:
    """A session channel backed by a Redis pub/sub subscription."""

    def __init__(
        self,
        client: RedisConnection,
        name: str,
        client_id: str,
        exclude_self: bool = True,
    ) -> None:
        self.name = name
        self._client = client
        self._client_id = client_id
        self._exclude_self = exclude_self
        self._handlers: dict[MessageType, list[MessageHandler]] = {}
        self._listener: ChannelListener | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def subscribe(self, on_failure: FailureHandler | None = None) -> None:
        """Start receiving messages for this channel."""
        self._listener = await self._client.listen(self.name, self.dispatch, on_failure)

    def on(self, event: MessageType, handler: MessageHandler) -> None:
        """Register a handler for one message type."""
        self._handlers.setdefault(event, []).append(handler)

    async def send(self, event: MessageType, payload: dict[str, Any]) -> None:
        """Publish a message on this channel.

        Raises:
            TransportError: If the channel is closed or Redis rejects the publish.
        """
        if self._closed:
            raise TransportError(f"Channel {self.name} is closed")

        envelope = BroadcastEnvelope(event=event, payload=payload, sender=self._client_id)
        try:
            await self._client.publish_json(self.name, envelope.model_dump(mode="json"))
        except redis.RedisError as e:
            logger.warning(
                "Failed to publish", channel=self.name, message_type=event.value, error=str(e)
            )
            raise TransportError(str(e)) from e

    async def dispatch(self, data: dict[str, Any]) -> None:
        """Route one raw inbound message to the handlers for its type."""
        try:
            envelope = BroadcastEnvelope.model_validate(data)
        except ValidationError:
            logger.warning("Dropping malformed channel message", channel=self.name)
            return

        if self._exclude_self and envelope.sender == self._client_id:
            return

        for handler in self._handlers.get(envelope.event, []):
            result = handler(envelope.payload)
            if inspect.isawaitable(result):
                await result

    async def close(self) -> None:
        """Unsubscribe and drop all handlers. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._handlers.clear()
        if self._listener is not None:
            await self._listener.stop()
            self._listener = None


class RedisChannelTransport:
    """Opens session channels on a shared Redis connection."""

    def __init__(self, client: RedisConnection, client_id: str | None = None) -> None:
        self._client = client
        self.client_id = client_id or uuid.uuid4().hex

    async def open(
        self,
        name: str,
        exclude_self: bool = True,
        on_error: TransportErrorHandler | None = None,
    ) -> RedisChannel:
        """Open and subscribe to a channel.

        Raises:
            TransportError: If the subscription cannot be established.
        """
        channel = RedisChannel(self._client, name, self.client_id, exclude_self)

        async def listener_failed(error: Exception) -> None:
            if on_error is not None:
                await on_error(TransportError(str(error) or TransportError.default_message))

        try:
            await channel.subscribe(listener_failed)
        except (redis.RedisError, RuntimeError) as e:
            logger.error("Failed to open channel", channel=name, error=str(e))
            raise TransportError(str(e)) from e

        return channel

    async def close(self, handle: ChannelHandle) -> None:
        """Close a channel opened by this transport."""
        await handle.close()
