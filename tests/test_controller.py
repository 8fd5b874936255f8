"""Tests for the live session controller."""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from megillah_live.controller import READING_MINUTES_SETTING, SessionController, fresh_code
from megillah_live.exceptions import (
    CreateError,
    LiveSyncError,
    NotFoundError,
    TransportError,
)
from megillah_live.models import MessageType, Role, SessionRecord, is_valid_code
from megillah_live.persistence import LocalStorage, PendingSessionPersistence


async def seed(store, code: str = "482913", password: str = "purim", **settings) -> None:
    await store.insert(SessionRecord(code=code, password=password, settings=settings))


@pytest.fixture
def unwritable_controller(  # noqa: PLR0913
    tmp_path, store, transport, viewport, callbacks, config, clock
) -> SessionController:
    """A controller whose pending-session file lives under a regular file."""
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    return SessionController(
        store=store,
        transport=transport,
        viewport=viewport,
        callbacks=callbacks,
        pending=PendingSessionPersistence(LocalStorage(blocker / "storage.json")),
        config=config,
        clock=clock,
        code_factory=lambda: "314159",
    )


class TestFreshCode:
    """Tests for session code generation."""

    def test_codes_are_six_digits(self) -> None:
        assert all(is_valid_code(fresh_code()) for _ in range(200))


class TestCreate:
    """Tests for SessionController.create."""

    @pytest.mark.asyncio
    async def test_create_leads_new_session(self, controller, store, transport) -> None:
        """Test that create stores a record and subscribes as leader."""
        session = await controller.create("purim")

        assert session.code == "314159"
        assert session.role is Role.LEADER
        assert store.records["314159"].password == "purim"
        assert transport.channels[0].name == "session:314159"
        assert controller.session is session
        assert controller.loading is False
        assert controller.error is None

    @pytest.mark.asyncio
    async def test_create_saves_pending_session(self, controller, pending) -> None:
        await controller.create("purim")
        saved = pending.load()
        assert saved is not None
        assert (saved.code, saved.password) == ("314159", "purim")

    @pytest.mark.asyncio
    async def test_create_survives_unwritable_storage(
        self, unwritable_controller, transport
    ) -> None:
        """Test that a pending-session write failure does not fail the create."""
        session = await unwritable_controller.create("purim")

        assert session.role is Role.LEADER
        assert unwritable_controller.session is session
        assert unwritable_controller.error is None
        assert not transport.channels[0].closed

    @pytest.mark.asyncio
    async def test_create_requires_password(self, controller, store) -> None:
        with pytest.raises(CreateError):
            await controller.create("")
        assert store.records == {}
        assert controller.error == "A password is required"

    @pytest.mark.asyncio
    async def test_insert_failure(self, controller, store, transport) -> None:
        """Test that a store failure surfaces as CreateError with its message."""
        store.insert_error = "duplicate key"

        with pytest.raises(CreateError) as exc_info:
            await controller.create("purim")

        assert exc_info.value.message == "duplicate key"
        assert controller.error == "duplicate key"
        assert controller.loading is False
        assert controller.session is None
        assert transport.channels == []

    @pytest.mark.asyncio
    async def test_transport_failure(self, controller, transport) -> None:
        transport.open_error = "refused"
        with pytest.raises(TransportError):
            await controller.create("purim")
        assert controller.error == "refused"
        assert controller.session is None

    @pytest.mark.asyncio
    async def test_loading_while_in_flight(self, controller, store) -> None:
        """Test that loading is set while the store call is pending."""
        seen = []
        original_insert = store.insert

        async def slow_insert(record):
            seen.append(controller.loading)
            await original_insert(record)

        store.insert = slow_insert
        await controller.create("purim")
        assert seen == [True]
        assert controller.loading is False


class TestJoin:
    """Tests for SessionController.join and role resolution."""

    @pytest.mark.asyncio
    async def test_matching_password_leads(self, controller, store) -> None:
        await seed(store)
        session = await controller.join("482913", "purim")
        assert session.role is Role.LEADER

    @pytest.mark.asyncio
    @pytest.mark.parametrize("password", [None, "", "Purim", "purim "])
    async def test_other_passwords_follow(self, controller, store, password) -> None:
        """Test that anything but an exact match joins as a follower."""
        await seed(store)
        session = await controller.join("482913", password)
        assert session.role is Role.FOLLOWER
        assert controller.error is None

    @pytest.mark.asyncio
    async def test_unknown_code(self, controller, transport) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await controller.join("000000")
        assert exc_info.value.message == "Session not found"
        assert controller.error == "Session not found"
        assert transport.channels == []

    @pytest.mark.asyncio
    async def test_malformed_code(self, controller, store) -> None:
        store.fetch = AsyncMock()
        with pytest.raises(NotFoundError):
            await controller.join("12ab")
        store.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_code_is_trimmed(self, controller, store) -> None:
        await seed(store)
        session = await controller.join("  482913 ")
        assert session.code == "482913"

    @pytest.mark.asyncio
    async def test_store_failure_reads_as_not_found(self, controller, store) -> None:
        await seed(store)
        store.fetch_error = "timeout"
        with pytest.raises(NotFoundError):
            await controller.join("482913")

    @pytest.mark.asyncio
    async def test_join_carries_shared_settings(self, controller, store) -> None:
        await seed(store, fontSize=1.2, readingMinutes=35)
        session = await controller.join("482913")
        assert session.initial_settings == {"fontSize": 1.2, "readingMinutes": 35}

    @pytest.mark.asyncio
    async def test_rejoin_replaces_subscription(self, controller, store, transport) -> None:
        """Test that only one channel is ever open."""
        await seed(store, code="111111")
        await seed(store, code="222222")

        first = await controller.join("111111")
        second = await controller.join("222222")

        assert first.closed
        assert controller.session is second
        assert [c.name for c in transport.open_channels] == ["session:222222"]


class TestLeaderBroadcast:
    """Tests for outgoing messages."""

    @pytest.mark.asyncio
    async def test_scroll_is_throttled(self, controller, transport, clock) -> None:
        session = await controller.create("purim")
        channel = transport.channels[0]

        sent = []
        for verse in ["1:1", "1:2", "1:3"]:
            sent.append(await session.broadcast(verse))
            clock.advance(50)
        clock.advance(200)
        sent.append(await session.broadcast("1:4"))

        assert sent == [True, False, False, True]
        assert channel.sent_events(MessageType.SCROLL) == [{"verse": "1:1"}, {"verse": "1:4"}]

    @pytest.mark.asyncio
    async def test_word_throttle_and_force(self, controller, transport, clock) -> None:
        session = await controller.create("purim")
        channel = transport.channels[0]

        assert await session.broadcast_word("1:1-1")
        clock.advance(40)
        assert not await session.broadcast_word("1:1-2")
        assert await session.broadcast_word("1:1-3", force=True)
        assert channel.sent_events(MessageType.WORD) == [
            {"wordId": "1:1-1"},
            {"wordId": "1:1-3"},
        ]

    @pytest.mark.asyncio
    async def test_highlight_verse(self, controller, transport) -> None:
        session = await controller.create("purim")
        assert await session.highlight_verse("5:2")
        assert transport.channels[0].sent == [(MessageType.WORD, {"wordId": "v:5:2"})]

    @pytest.mark.asyncio
    async def test_time_is_shared_with_late_joiners(self, controller, store, transport) -> None:
        session = await controller.create("purim")
        assert await session.broadcast_time(12.5)
        assert transport.channels[0].sent == [(MessageType.TIME, {"minutes": 12.5})]
        assert store.records["314159"].settings[READING_MINUTES_SETTING] == 12.5

    @pytest.mark.asyncio
    async def test_setting_is_shared(self, controller, store, transport) -> None:
        session = await controller.create("purim")
        assert await session.broadcast_setting("translationMode", "side-by-side")
        assert transport.channels[0].sent == [
            (MessageType.SETTING, {"key": "translationMode", "value": "side-by-side"})
        ]
        assert store.records["314159"].settings == {"translationMode": "side-by-side"}

    @pytest.mark.asyncio
    async def test_settings_store_failure_is_not_raised(self, controller, store) -> None:
        session = await controller.create("purim")
        store.settings_error = "read only"
        assert await session.broadcast_setting("fontSize", 1.1)

    @pytest.mark.asyncio
    async def test_follower_cannot_broadcast(self, controller, store, transport) -> None:
        """Test that every broadcast is a no-op for followers."""
        await seed(store)
        session = await controller.join("482913", "wrong")

        assert not await session.broadcast("1:1")
        assert not await session.broadcast_word("1:1-1", force=True)
        assert not await session.highlight_verse("1:1")
        assert not await session.broadcast_time(3)
        assert not await session.broadcast_setting("fontSize", 1)
        assert transport.channels[0].sent == []
        assert store.records["482913"].settings == {}

    @pytest.mark.asyncio
    async def test_stale_session_cannot_broadcast(self, controller, transport) -> None:
        session = await controller.create("purim")
        await session.leave()
        assert not await session.broadcast("1:1")
        assert transport.channels[0].sent == []

    @pytest.mark.asyncio
    async def test_send_failure_is_recorded(self, controller, transport, clock) -> None:
        """Test that a failed send is logged and recorded, and the session keeps going."""
        session = await controller.create("purim")
        channel = transport.channels[0]
        channel.send_error = "broken pipe"
        assert not await session.broadcast("1:1")
        assert not await session.broadcast_word("1:1-1", force=True)
        assert controller.error == "broken pipe"

        channel.send_error = None
        clock.advance(200)
        assert await session.broadcast("1:2")
        assert channel.sent_events(MessageType.SCROLL) == [{"verse": "1:2"}]

    @pytest.mark.asyncio
    async def test_broadcast_survives_unwritable_storage(
        self, unwritable_controller, transport
    ) -> None:
        session = await unwritable_controller.create("purim")
        assert await session.broadcast("1:1")
        assert transport.channels[0].sent_events(MessageType.SCROLL) == [{"verse": "1:1"}]
        assert unwritable_controller.error is None

    @pytest.mark.asyncio
    async def test_first_broadcast_clears_pending(self, controller, pending) -> None:
        session = await controller.create("purim")
        assert pending.load() is not None
        await session.broadcast("1:1")
        assert pending.load() is None

    @pytest.mark.asyncio
    async def test_share_url(self, controller) -> None:
        session = await controller.create("purim")
        assert session.share_url == "https://test.megillah.app/live/join?code=314159"


class TestFollowerInbound:
    """Tests for routing inbound traffic to callbacks."""

    @pytest_asyncio.fixture
    async def follower(self, controller, store, transport):
        await seed(store)
        await controller.join("482913")
        return transport.channels[0]

    @pytest.mark.asyncio
    async def test_scroll_emits_target(self, follower, callbacks, viewport) -> None:
        await follower.deliver(MessageType.SCROLL, {"verse": "2:4"})
        callbacks.on_scroll_target.assert_called_once_with("2:4")
        assert viewport.moves == [("2:4", 64, True)]

    @pytest.mark.asyncio
    async def test_suppressed_scroll_emits_nothing(
        self, follower, callbacks, viewport, clock
    ) -> None:
        """Test that a scroll right after a highlight is discarded."""
        await follower.deliver(MessageType.WORD, {"wordId": "2:4-3"})
        clock.advance(1000)
        await follower.deliver(MessageType.SCROLL, {"verse": "2:6"})

        callbacks.on_word_highlight.assert_called_once_with("2:4-3")
        callbacks.on_scroll_target.assert_not_called()
        assert [m[0] for m in viewport.moves] == ["2:4"]

    @pytest.mark.asyncio
    async def test_verse_highlight_callback(self, follower, callbacks) -> None:
        await follower.deliver(MessageType.WORD, {"wordId": "v:2:4"})
        callbacks.on_verse_highlight.assert_called_once_with("2:4")
        callbacks.on_word_highlight.assert_not_called()

    @pytest.mark.asyncio
    async def test_time_and_setting_callbacks(self, follower, callbacks) -> None:
        await follower.deliver(MessageType.TIME, {"minutes": 7})
        await follower.deliver(MessageType.SETTING, {"key": "lang", "value": "he"})
        callbacks.on_time_update.assert_called_once_with(7.0)
        callbacks.on_setting_change.assert_called_once_with("lang", "he")

    @pytest.mark.asyncio
    async def test_invalid_payload_is_dropped(self, follower, callbacks) -> None:
        await follower.deliver(MessageType.SCROLL, {"position": 3})
        await follower.deliver(MessageType.TIME, {"minutes": "soon"})
        callbacks.on_scroll_target.assert_not_called()
        callbacks.on_time_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, controller, store, transport) -> None:
        received = []

        async def on_time(minutes):
            await asyncio.sleep(0)
            received.append(minutes)

        controller.callbacks.on_time_update = on_time
        await seed(store)
        await controller.join("482913")
        await transport.channels[0].deliver(MessageType.TIME, {"minutes": 4})
        assert received == [4.0]

    @pytest.mark.asyncio
    async def test_resume_sync_emits_jump(self, controller, follower, callbacks) -> None:
        await controller.set_sync_enabled(False)
        await follower.deliver(MessageType.SCROLL, {"verse": "3:3"})
        callbacks.on_scroll_target.assert_called_once_with("3:3")

        assert await controller.toggle_sync() is True
        assert callbacks.on_scroll_target.call_count == 2
        callbacks.on_scroll_target.assert_called_with("3:3")

    @pytest.mark.asyncio
    async def test_leader_registers_no_handlers(self, controller, transport) -> None:
        await controller.create("purim")
        assert transport.channels[0].handlers == {}

    @pytest.mark.asyncio
    async def test_transport_error_is_surfaced(self, follower, controller, callbacks) -> None:
        error = TransportError("socket closed")
        await follower.on_error(error)
        assert controller.error == "socket closed"
        callbacks.on_transport_error.assert_awaited_once_with(error)


class TestLifecycle:
    """Tests for leave, close and pending-session handling."""

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, controller, transport) -> None:
        session = await controller.create("purim")
        await session.leave()
        await session.leave()
        await controller.leave()
        assert controller.session is None
        assert transport.channels[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_close_discards_in_flight_join(self, controller, store, transport) -> None:
        """Test that a join finishing after close opens no subscription."""
        await seed(store)
        gate = asyncio.Event()
        original_fetch = store.fetch

        async def slow_fetch(code):
            await gate.wait()
            return await original_fetch(code)

        store.fetch = slow_fetch
        task = asyncio.create_task(controller.join("482913"))
        await asyncio.sleep(0)
        await controller.close()
        gate.set()

        with pytest.raises(LiveSyncError):
            await task

        assert controller.alive is False
        assert controller.session is None
        assert transport.open_channels == []

    @pytest.mark.asyncio
    async def test_closed_controller_ignores_inbound(
        self, controller, store, transport, callbacks
    ) -> None:
        await seed(store)
        await controller.join("482913")
        channel = transport.channels[0]
        await controller.close()
        await channel.deliver(MessageType.SCROLL, {"verse": "1:1"})
        callbacks.on_scroll_target.assert_not_called()

    @pytest.mark.asyncio
    async def test_resume_pending(self, controller, transport) -> None:
        await controller.create("purim")
        await controller.leave()

        session = await controller.resume_pending()

        assert session is not None
        assert session.code == "314159"
        assert session.role is Role.LEADER

    @pytest.mark.asyncio
    async def test_resume_without_pending(self, controller) -> None:
        assert await controller.resume_pending() is None

    @pytest.mark.asyncio
    async def test_abandon_pending(self, controller, pending) -> None:
        await controller.create("purim")
        controller.abandon_pending()
        assert pending.load() is None

    @pytest.mark.asyncio
    async def test_works_without_optional_collaborators(self, store, transport) -> None:
        controller = SessionController(store, transport, code_factory=lambda: "555555")
        session = await controller.create("purim")
        assert await session.broadcast("1:1")
