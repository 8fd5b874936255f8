"""Megillah Live - real-time follow-along sessions for a Megillah reading."""

from megillah_live.arbiter import ArbiterResult, EventArbiter, NullViewport, Viewport
from megillah_live.controller import LiveSession, SessionCallbacks, SessionController
from megillah_live.exceptions import (
    CreateError,
    LiveSyncError,
    NotFoundError,
    StoreError,
    TransportError,
)
from megillah_live.models import MessageType, PendingSession, Role, parse_word_id
from megillah_live.persistence import LocalStorage, PendingSessionPersistence
from megillah_live.throttle import BroadcastThrottle

__version__ = "0.1.0"

__all__ = [
    "ArbiterResult",
    "BroadcastThrottle",
    "CreateError",
    "EventArbiter",
    "LiveSession",
    "LiveSyncError",
    "LocalStorage",
    "MessageType",
    "NotFoundError",
    "NullViewport",
    "PendingSession",
    "PendingSessionPersistence",
    "Role",
    "SessionCallbacks",
    "SessionController",
    "StoreError",
    "TransportError",
    "Viewport",
    "__version__",
    "parse_word_id",
]
