"""Drop-based rate limiting for outgoing broadcasts."""

import time
from collections.abc import Callable

Clock = Callable[[], float]


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000


class BroadcastThrottle:
    """Lets at most one message through per interval and drops the rest.

    Dropped messages are not queued or coalesced, so the final position of a
    burst faster than the interval may never be sent.
    """

    def __init__(self, interval_ms: float = 200, clock: Clock = monotonic_ms) -> None:
        self.interval_ms = interval_ms
        self._clock = clock
        self.last_sent_at: float | None = None

    def allow(self, now: float | None = None) -> bool:
        """Return True and record ``now`` if a message may be sent."""
        if now is None:
            now = self._clock()
        if self.last_sent_at is not None and now - self.last_sent_at < self.interval_ms:
            return False
        self.last_sent_at = now
        return True

    def reset(self) -> None:
        self.last_sent_at = None
