"""Pytest fixtures for megillah-live tests."""

import inspect
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from megillah_live.config import LiveSyncConfig
from megillah_live.controller import SessionCallbacks, SessionController
from megillah_live.exceptions import StoreError, TransportError
from megillah_live.models import MessageType, SessionRecord
from megillah_live.persistence import LocalStorage, PendingSessionPersistence


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: float = 0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeViewport:
    """Records every scroll request."""

    def __init__(self, header_height: float = 48) -> None:
        self.header_height = header_height
        self.moves: list[tuple[str, float, bool]] = []
        self.missing: set[str] = set()

    def sticky_header_height(self) -> float:
        return self.header_height

    def scroll_to(self, verse_key: str, offset: float, smooth: bool = True) -> bool:
        if verse_key in self.missing:
            return False
        self.moves.append((verse_key, offset, smooth))
        return True


class InMemoryStore:
    """Dict-backed session record store."""

    def __init__(self) -> None:
        self.records: dict[str, SessionRecord] = {}
        self.insert_error: str | None = None
        self.fetch_error: str | None = None
        self.settings_error: str | None = None

    async def insert(self, record: SessionRecord) -> None:
        if self.insert_error:
            raise StoreError(self.insert_error)
        self.records[record.code] = record

    async def fetch(self, code: str) -> SessionRecord | None:
        if self.fetch_error:
            raise StoreError(self.fetch_error)
        return self.records.get(code)

    async def fetch_password(self, code: str) -> str | None:
        record = await self.fetch(code)
        return record.password if record else None

    async def update_settings(self, code: str, updates: dict[str, Any]) -> None:
        if self.settings_error:
            raise StoreError(self.settings_error)
        if code in self.records:
            self.records[code].settings.update(updates)


class FakeChannel:
    """In-memory channel; ``deliver`` simulates inbound traffic."""

    def __init__(self, name: str, on_error: Any = None) -> None:
        self.name = name
        self.on_error = on_error
        self.handlers: dict[MessageType, list[Any]] = {}
        self.sent: list[tuple[MessageType, dict[str, Any]]] = []
        self.send_error: str | None = None
        self._closed = False
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event: MessageType, handler: Any) -> None:
        self.handlers.setdefault(event, []).append(handler)

    async def send(self, event: MessageType, payload: dict[str, Any]) -> None:
        if self.send_error:
            raise TransportError(self.send_error)
        self.sent.append((event, payload))

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    async def deliver(self, event: MessageType, payload: dict[str, Any]) -> None:
        for handler in self.handlers.get(event, []):
            result = handler(payload)
            if inspect.isawaitable(result):
                await result

    def sent_events(self, event: MessageType) -> list[dict[str, Any]]:
        return [payload for sent_event, payload in self.sent if sent_event is event]


class FakeTransport:
    """Hands out FakeChannels and remembers them."""

    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.open_error: str | None = None

    async def open(
        self,
        name: str,
        exclude_self: bool = True,
        on_error: Any = None,
    ) -> FakeChannel:
        if self.open_error:
            raise TransportError(self.open_error)
        channel = FakeChannel(name, on_error)
        self.channels.append(channel)
        return channel

    async def close(self, handle: FakeChannel) -> None:
        await handle.close()

    @property
    def open_channels(self) -> list[FakeChannel]:
        return [c for c in self.channels if not c.closed]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def viewport() -> FakeViewport:
    return FakeViewport()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def storage_path(tmp_path: Path) -> Path:
    return tmp_path / "megillah-live" / "storage.json"


@pytest.fixture
def pending(storage_path: Path) -> PendingSessionPersistence:
    return PendingSessionPersistence(LocalStorage(storage_path))


@pytest.fixture
def config(storage_path: Path) -> LiveSyncConfig:
    return LiveSyncConfig(storage_path=storage_path, share_base_url="https://test.megillah.app")


@pytest.fixture
def callbacks() -> SessionCallbacks:
    """Callbacks backed by mocks so tests can assert on calls."""
    return SessionCallbacks(
        on_scroll_target=MagicMock(),
        on_time_update=MagicMock(),
        on_word_highlight=MagicMock(),
        on_verse_highlight=MagicMock(),
        on_setting_change=MagicMock(),
        on_transport_error=AsyncMock(),
    )


@pytest.fixture
def controller(  # noqa: PLR0913
    store: InMemoryStore,
    transport: FakeTransport,
    viewport: FakeViewport,
    callbacks: SessionCallbacks,
    pending: PendingSessionPersistence,
    config: LiveSyncConfig,
    clock: FakeClock,
) -> SessionController:
    return SessionController(
        store=store,
        transport=transport,
        viewport=viewport,
        callbacks=callbacks,
        pending=pending,
        config=config,
        clock=clock,
        code_factory=lambda: "314159",
    )


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Create a mock of the underlying redis.asyncio client."""
    client = MagicMock()
    client.hget = AsyncMock(return_value=None)
    client.hset = AsyncMock(return_value=1)
    client.hgetall = AsyncMock(return_value={})
    client.publish = AsyncMock(return_value=1)
    client.pubsub = MagicMock()
    client.aclose = AsyncMock()
    return client
