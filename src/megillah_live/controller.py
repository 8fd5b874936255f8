"""Live session controller.

Creates and joins follow-along sessions, resolves each participant's role,
owns the single channel subscription and routes traffic in both directions:
leader actions out through the throttles, follower traffic in through the
event arbiter.
"""

import inspect
import random
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from megillah_live import links
from megillah_live.arbiter import EventArbiter, NullViewport, Viewport
from megillah_live.config import LiveSyncConfig
from megillah_live.exceptions import (
    CreateError,
    LiveSyncError,
    NotFoundError,
    StoreError,
    TransportError,
)
from megillah_live.models import (
    HighlightMode,
    MessageType,
    Role,
    ScrollPayload,
    SessionRecord,
    SettingPayload,
    TimePayload,
    WordPayload,
    channel_name,
    dump_payload,
    is_valid_code,
    parse_payload,
    verse_word_id,
)
from megillah_live.persistence import PendingSessionPersistence
from megillah_live.store import SessionRecordStore
from megillah_live.throttle import BroadcastThrottle, Clock, monotonic_ms
from megillah_live.transport import ChannelHandle, ChannelTransport

logger = structlog.get_logger()

# Shared-settings key the reading-time estimate is stored under
READING_MINUTES_SETTING = "readingMinutes"


def fresh_code() -> str:
    """Random six-digit session code. Uniqueness is not checked."""
    return str(random.randint(100000, 999999))


@dataclass
class SessionCallbacks:
    """Follower-facing callbacks. Each may be a plain or an async callable."""

    on_scroll_target: Callable[[str], Any] | None = None
    on_time_update: Callable[[float], Any] | None = None
    on_word_highlight: Callable[[str], Any] | None = None
    on_verse_highlight: Callable[[str], Any] | None = None
    on_setting_change: Callable[[str, Any], Any] | None = None
    on_transport_error: Callable[[TransportError], Any] | None = None


async def _emit(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class LiveSession:
    """A connected participant.

    Broadcast methods are no-ops (returning False) unless the role is
    ``leader`` and the session is still the controller's active one.
    """

    def __init__(
        self,
        controller: "SessionController",
        code: str,
        role: Role,
        channel: ChannelHandle,
        initial_settings: dict[str, Any] | None = None,
    ) -> None:
        self._controller = controller
        self.code = code
        self.role = role
        self.channel = channel
        self.initial_settings = dict(initial_settings or {})
        self.closed = False

    @property
    def is_leader(self) -> bool:
        return self.role is Role.LEADER

    @property
    def share_url(self) -> str:
        return links.share_url(self.code, self._controller.config.share_base_url)

    async def broadcast(self, verse: str) -> bool:
        """Send the leader's reading position, subject to the scroll throttle."""
        if not self.is_leader:
            return False
        if not self._controller.scroll_throttle.allow():
            return False
        return await self._controller.publish(self, MessageType.SCROLL, ScrollPayload(verse=verse))

    async def broadcast_time(self, minutes: float) -> bool:
        """Send the remaining-time estimate and store it for late joiners."""
        if not self.is_leader:
            return False
        sent = await self._controller.publish(
            self, MessageType.TIME, TimePayload(minutes=minutes)
        )
        await self._controller.share_settings(self, {READING_MINUTES_SETTING: minutes})
        return sent

    async def broadcast_word(self, word_id: str, force: bool = False) -> bool:
        """Send a highlight target.

        Dragged word highlights are limited by the word throttle; ``force``
        skips it for discrete taps.
        """
        if not self.is_leader:
            return False
        if not force and not self._controller.word_throttle.allow():
            return False
        return await self._controller.publish(
            self, MessageType.WORD, WordPayload(word_id=word_id)
        )

    async def highlight_verse(self, verse: str) -> bool:
        """Highlight a whole verse for followers."""
        return await self.broadcast_word(verse_word_id(verse), force=True)

    async def broadcast_setting(self, key: str, value: Any) -> bool:
        """Mirror a display option on followers and store it for late joiners."""
        if not self.is_leader:
            return False
        sent = await self._controller.publish(
            self, MessageType.SETTING, SettingPayload(key=key, value=value)
        )
        await self._controller.share_settings(self, {key: value})
        return sent

    async def leave(self) -> None:
        """Leave the session. Safe to call more than once."""
        if self._controller.session is self:
            await self._controller.leave()
        self.closed = True


class SessionController:
    """Orchestrates a single participant's live session.

    Holds at most one channel subscription at a time. ``loading`` and
    ``error`` mirror the state a UI shows while a create or join is running.
    Only one create/join should be in flight per controller.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: SessionRecordStore,
        transport: ChannelTransport,
        viewport: Viewport | None = None,
        callbacks: SessionCallbacks | None = None,
        pending: PendingSessionPersistence | None = None,
        config: LiveSyncConfig | None = None,
        clock: Clock = monotonic_ms,
        code_factory: Callable[[], str] = fresh_code,
    ) -> None:
        self.store = store
        self.transport = transport
        self.callbacks = callbacks or SessionCallbacks()
        self.pending = pending
        self.config = config or LiveSyncConfig()
        self._code_factory = code_factory

        self.scroll_throttle = BroadcastThrottle(self.config.throttle_interval_ms, clock)
        self.word_throttle = BroadcastThrottle(self.config.word_throttle_interval_ms, clock)
        self.arbiter = EventArbiter(
            viewport or NullViewport(),
            suppression_window_ms=self.config.suppression_window_ms,
            scroll_margin_px=self.config.scroll_margin_px,
            clock=clock,
        )

        self.session: LiveSession | None = None
        self.loading = False
        self.error: str | None = None

        self._alive = True
        self._broadcast_started = False

    @property
    def alive(self) -> bool:
        return self._alive

    # Session lifecycle

    async def create(self, password: str) -> LiveSession:
        """Create a new session and lead it.

        Raises:
            CreateError: If the record cannot be stored.
            TransportError: If the channel cannot be opened.
        """
        self._begin()
        try:
            if not password:
                raise CreateError("A password is required")

            code = self._code_factory()
            try:
                await self.store.insert(SessionRecord(code=code, password=password))
            except StoreError as e:
                raise CreateError(e.message) from e

            session = await self.subscribe(code, Role.LEADER)
            if self.pending is not None:
                self.pending.save(code, password)
            logger.info("Live session created", code=code)
            return session
        except LiveSyncError as e:
            self._fail(e)
            raise
        finally:
            self._end()

    async def join(self, code: str, password: str | None = None) -> LiveSession:
        """Join an existing session.

        The participant leads only if ``password`` matches the stored one;
        any other password silently joins as a follower.

        Raises:
            NotFoundError: If no session exists for ``code``.
            TransportError: If the channel cannot be opened.
        """
        self._begin()
        try:
            code = code.strip()
            if not is_valid_code(code):
                raise NotFoundError()

            try:
                record = await self.store.fetch(code)
            except StoreError as e:
                logger.warning("Session lookup failed", code=code, error=e.message)
                raise NotFoundError() from e
            if record is None:
                raise NotFoundError()

            role = (
                Role.LEADER
                if self._password_matches(password, record.password)
                else Role.FOLLOWER
            )
            return await self.subscribe(code, role, record.settings)
        except LiveSyncError as e:
            self._fail(e)
            raise
        finally:
            self._end()

    async def subscribe(
        self,
        code: str,
        role: Role,
        initial_settings: dict[str, Any] | None = None,
    ) -> LiveSession:
        """Open the channel for ``code`` and install a session for ``role``.

        Any current session is left first. Followers route inbound traffic to
        the arbiter and callbacks; leaders ignore inbound traffic.

        Raises:
            TransportError: If the channel cannot be opened.
            LiveSyncError: If the controller was closed while opening.
        """
        await self.leave()

        channel = await self.transport.open(
            channel_name(code, self.config.channel_prefix),
            exclude_self=True,
            on_error=self._on_transport_error,
        )
        if not self._alive:
            await self.transport.close(channel)
            raise LiveSyncError("Session controller closed")

        if role is Role.FOLLOWER:
            channel.on(MessageType.SCROLL, self._on_scroll)
            channel.on(MessageType.WORD, self._on_word)
            channel.on(MessageType.TIME, self._on_time)
            channel.on(MessageType.SETTING, self._on_setting)

        self.scroll_throttle.reset()
        self.word_throttle.reset()
        self.arbiter.reset()
        self._broadcast_started = False

        self.session = LiveSession(self, code, role, channel, initial_settings)
        logger.info("Joined live session", code=code, role=role.value, channel=channel.name)
        return self.session

    async def leave(self) -> None:
        """Close the channel and drop the session. Idempotent."""
        session = self.session
        self.session = None
        if session is None:
            return

        session.closed = True
        await self.transport.close(session.channel)
        self.arbiter.reset()
        logger.info("Left live session", code=session.code, role=session.role.value)

    async def close(self) -> None:
        """Tear the controller down; in-flight create/join results are discarded."""
        self._alive = False
        await self.leave()

    # Pending session

    async def resume_pending(self) -> LiveSession | None:
        """Re-join the session saved by the last ``create``, if any."""
        if self.pending is None:
            return None
        saved = self.pending.load()
        if saved is None:
            return None
        return await self.join(saved.code, saved.password)

    def abandon_pending(self) -> None:
        if self.pending is not None:
            self.pending.clear()

    # Follower sync toggle

    async def set_sync_enabled(self, enabled: bool) -> None:
        """Pause or resume following; resuming jumps to the leader's latest verse."""
        jumped_to = self.arbiter.set_sync_enabled(enabled)
        if jumped_to is not None:
            await _emit(self.callbacks.on_scroll_target, jumped_to)

    async def toggle_sync(self) -> bool:
        await self.set_sync_enabled(not self.arbiter.sync_enabled)
        return self.arbiter.sync_enabled

    # Outgoing

    async def publish(self, session: LiveSession, event: MessageType, payload: BaseModel) -> bool:
        """Send one message for ``session`` if it is the active leader session.

        Delivery failures are logged and recorded on ``error``, not raised.
        The first successful send clears the pending session.
        """
        if session is not self.session or session.role is not Role.LEADER:
            return False

        try:
            await session.channel.send(event, dump_payload(payload))
        except TransportError as e:
            logger.warning("Broadcast failed", code=session.code, message_type=event.value)
            self.error = e.message
            return False

        if not self._broadcast_started:
            self._broadcast_started = True
            if self.pending is not None:
                self.pending.clear()
        return True

    async def share_settings(self, session: LiveSession, updates: dict[str, Any]) -> None:
        """Store leader settings on the record so late joiners start with them."""
        if session is not self.session or session.role is not Role.LEADER:
            return
        try:
            await self.store.update_settings(session.code, updates)
        except StoreError as e:
            logger.warning("Failed to store shared settings", code=session.code, error=e.message)

    # Incoming (follower only)

    def _validate(self, event: MessageType, payload: dict[str, Any]) -> BaseModel | None:
        if self.session is None or not self._alive:
            return None
        try:
            return parse_payload(event, payload)
        except ValidationError:
            logger.warning("Dropping invalid payload", message_type=event.value)
            return None

    async def _on_scroll(self, payload: dict[str, Any]) -> None:
        message = self._validate(MessageType.SCROLL, payload)
        if not isinstance(message, ScrollPayload):
            return
        result = self.arbiter.on_scroll(message.verse)
        if result.applied:
            await _emit(self.callbacks.on_scroll_target, message.verse)

    async def _on_word(self, payload: dict[str, Any]) -> None:
        message = self._validate(MessageType.WORD, payload)
        if not isinstance(message, WordPayload):
            return
        result = self.arbiter.on_word(message.word_id)
        if result.target is not None and result.target.mode is HighlightMode.VERSE:
            await _emit(self.callbacks.on_verse_highlight, result.target.verse_key)
        else:
            await _emit(self.callbacks.on_word_highlight, message.word_id)

    async def _on_time(self, payload: dict[str, Any]) -> None:
        message = self._validate(MessageType.TIME, payload)
        if isinstance(message, TimePayload):
            await _emit(self.callbacks.on_time_update, message.minutes)

    async def _on_setting(self, payload: dict[str, Any]) -> None:
        message = self._validate(MessageType.SETTING, payload)
        if isinstance(message, SettingPayload):
            await _emit(self.callbacks.on_setting_change, message.key, message.value)

    async def _on_transport_error(self, error: TransportError) -> None:
        if not self._alive or self.session is None:
            return
        logger.error("Live session connection lost", code=self.session.code, error=error.message)
        self.error = error.message
        await _emit(self.callbacks.on_transport_error, error)

    # Helpers

    @staticmethod
    def _password_matches(offered: str | None, stored: str) -> bool:
        if not offered:
            return False
        return secrets.compare_digest(offered.encode("utf-8"), stored.encode("utf-8"))

    def _begin(self) -> None:
        if self._alive:
            self.loading = True
            self.error = None

    def _end(self) -> None:
        if self._alive:
            self.loading = False

    def _fail(self, error: LiveSyncError) -> None:
        if self._alive:
            self.error = error.message
