"""Follower-side arbitration of incoming position events.

A follower's viewport is pulled by two signals: the leader's continuous
scroll position and discrete highlight taps. A highlight wins for a short
suppression window so the two do not fight over the viewport. All decisions
are plain timestamp comparisons made when a message arrives.
"""

from dataclasses import dataclass
from typing import Protocol

import structlog

from megillah_live.models import HighlightMode, WordTarget, parse_word_id
from megillah_live.throttle import Clock, monotonic_ms

logger = structlog.get_logger()

DEFAULT_SUPPRESSION_WINDOW_MS = 3000
DEFAULT_SCROLL_MARGIN_PX = 16


class Viewport(Protocol):
    """The reader view a follower's position is applied to.

    Owned by the rendering layer; the arbiter only asks it to locate a verse
    anchor and scroll there.
    """

    def sticky_header_height(self) -> float: ...

    def scroll_to(self, verse_key: str, offset: float, smooth: bool = True) -> bool:
        """Scroll so ``verse_key`` sits ``offset`` pixels below the top.

        Returns False if no anchor exists for the verse.
        """
        ...


class NullViewport:
    """Viewport for headless participants; nothing is ever scrolled."""

    def sticky_header_height(self) -> float:
        return 0

    def scroll_to(self, verse_key: str, offset: float, smooth: bool = True) -> bool:
        return False


@dataclass
class ArbiterResult:
    """Outcome of one arbitrated message."""

    applied: bool
    verse_key: str | None = None
    moved: bool = False
    target: WordTarget | None = None
    reason: str | None = None  # Why a message was discarded


class EventArbiter:
    """Decides whether an incoming scroll or highlight moves the viewport."""

    def __init__(
        self,
        viewport: Viewport,
        suppression_window_ms: float = DEFAULT_SUPPRESSION_WINDOW_MS,
        scroll_margin_px: float = DEFAULT_SCROLL_MARGIN_PX,
        clock: Clock = monotonic_ms,
    ) -> None:
        self.viewport = viewport
        self.suppression_window_ms = suppression_window_ms
        self.scroll_margin_px = scroll_margin_px
        self._clock = clock

        self.last_applied_verse: str | None = None
        self.last_highlight_at: float | None = None

        # Most recent verse seen in any message, suppressed or not
        self.latest_verse: str | None = None

        self.active_word: str | None = None
        self.active_verse: str | None = None
        self.sync_enabled = True

    def on_word(self, word_id: str, now: float | None = None) -> ArbiterResult:
        """Apply a highlight. Highlights are never discarded."""
        if now is None:
            now = self._clock()

        target = parse_word_id(word_id)
        self.last_highlight_at = now
        self.latest_verse = target.verse_key

        if target.mode is HighlightMode.VERSE:
            self.active_verse = target.verse_key
            self.active_word = None
        else:
            self.active_word = word_id
            self.active_verse = None

        moved = self._move_to(target.verse_key) if self.sync_enabled else False
        return ArbiterResult(applied=True, verse_key=target.verse_key, moved=moved, target=target)

    def on_scroll(self, verse: str, now: float | None = None) -> ArbiterResult:
        """Apply a scroll position unless a recent highlight or a repeat rules it out."""
        if now is None:
            now = self._clock()

        self.latest_verse = verse

        if (
            self.last_highlight_at is not None
            and now - self.last_highlight_at < self.suppression_window_ms
        ):
            return ArbiterResult(applied=False, verse_key=verse, reason="suppressed")

        if verse == self.last_applied_verse:
            return ArbiterResult(applied=False, verse_key=verse, reason="duplicate")

        self.last_applied_verse = verse
        moved = self._move_to(verse) if self.sync_enabled else False
        return ArbiterResult(applied=True, verse_key=verse, moved=moved)

    def set_sync_enabled(self, enabled: bool) -> str | None:
        """Turn viewport following on or off.

        Re-enabling jumps straight to the latest known leader position
        without waiting for the next message. Returns the verse jumped to.
        """
        was_enabled = self.sync_enabled
        self.sync_enabled = enabled
        if not enabled or was_enabled or self.latest_verse is None:
            return None

        self.last_applied_verse = self.latest_verse
        self._move_to(self.latest_verse)
        return self.latest_verse

    def toggle_sync(self) -> bool:
        """Flip following on/off; returns the new state."""
        self.set_sync_enabled(not self.sync_enabled)
        return self.sync_enabled

    def reset(self) -> None:
        self.last_applied_verse = None
        self.last_highlight_at = None
        self.latest_verse = None
        self.active_word = None
        self.active_verse = None
        self.sync_enabled = True

    def _move_to(self, verse_key: str) -> bool:
        offset = self.viewport.sticky_header_height() + self.scroll_margin_px
        moved = self.viewport.scroll_to(verse_key, offset, smooth=True)
        if not moved:
            logger.debug("No anchor for verse", verse=verse_key)
        return moved
