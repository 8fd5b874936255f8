"""Error taxonomy for live follow-along sessions.

Every error carries a human-readable message that can be shown to the
reader as-is. None of them is fatal: the caller can always retry create or
join from a clean controller.
"""


class LiveSyncError(Exception):
    """Base class for live-sync failures."""

    default_message = "Live session error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class StoreError(LiveSyncError):
    """The session record backend failed."""

    default_message = "Session store unavailable"


class CreateError(LiveSyncError):
    """Inserting a new session record failed."""

    default_message = "Failed to create session"


class NotFoundError(LiveSyncError):
    """No session record exists for the requested code."""

    default_message = "Session not found"


class TransportError(LiveSyncError):
    """The real-time channel could not be opened or stopped delivering."""

    default_message = "Connection error"
