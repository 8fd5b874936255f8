"""Wire protocol and session models for live follow-along."""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Prefix marking a whole-verse highlight target ("v:3:7")
VERSE_WORD_PREFIX = "v:"

# Separator between the verse key and the word index ("3:7-5")
WORD_INDEX_SEPARATOR = "-"

DEFAULT_CHANNEL_PREFIX = "session:"

_CODE_RE = re.compile(r"^[0-9]{6}$")


class Role(str, Enum):
    """Participant role, fixed for the lifetime of a session."""

    LEADER = "leader"
    FOLLOWER = "follower"


class MessageType(str, Enum):
    """Broadcast message variants."""

    SCROLL = "scroll"  # Leader reading position
    TIME = "time"  # Remaining-time estimate in minutes
    WORD = "word"  # Verse or single-word highlight
    SETTING = "setting"  # Display option to mirror


class HighlightMode(str, Enum):
    """What a word message highlights."""

    VERSE = "verse"
    WORD = "word"


class ScrollPayload(BaseModel):
    """Leader's current reading position."""

    verse: str

    @field_validator("verse")
    @classmethod
    def _verse_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("verse must not be blank")
        return value


class TimePayload(BaseModel):
    """Leader's reading-time estimate."""

    minutes: float = Field(ge=0)


class WordPayload(BaseModel):
    """Highlight target, either ``v:<verse>`` or ``<verse>-<index>``."""

    model_config = ConfigDict(populate_by_name=True)

    word_id: str = Field(alias="wordId", min_length=1)


class SettingPayload(BaseModel):
    """A display-option change to mirror on followers."""

    key: str = Field(min_length=1)
    value: Any = None


PAYLOAD_MODELS: dict[MessageType, type[BaseModel]] = {
    MessageType.SCROLL: ScrollPayload,
    MessageType.TIME: TimePayload,
    MessageType.WORD: WordPayload,
    MessageType.SETTING: SettingPayload,
}


class BroadcastEnvelope(BaseModel):
    """JSON envelope published on a session channel."""

    event: MessageType
    payload: dict[str, Any] = Field(default_factory=dict)
    sender: str | None = None  # Transport client id, used for self-exclusion


class WordTarget(BaseModel):
    """A parsed ``word`` message target."""

    verse_key: str
    mode: HighlightMode
    word_index: int | None = None


class SessionRecord(BaseModel):
    """A persisted session: the code, its leader password and shared settings."""

    code: str
    password: str
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PendingSession(BaseModel):
    """A just-created session the leader has not started broadcasting on yet."""

    code: str
    password: str


def parse_payload(event: MessageType, payload: dict[str, Any]) -> BaseModel:
    """Validate a raw payload against the model for its message type.

    Raises:
        ValidationError: If the payload does not match the variant.
    """
    return PAYLOAD_MODELS[event].model_validate(payload)


def dump_payload(payload: BaseModel) -> dict[str, Any]:
    """Serialize a payload model using wire (camelCase) names."""
    return payload.model_dump(by_alias=True)


def parse_word_id(word_id: str) -> WordTarget:
    """Derive the verse key and highlight mode from a word id.

    ``"v:3:7"`` is a whole-verse highlight of ``3:7``. Anything else is a
    single-word highlight whose verse key is the id with everything from the
    final ``-`` removed, so ``"3:7-5"`` is word 5 of ``3:7``.
    """
    if word_id.startswith(VERSE_WORD_PREFIX):
        return WordTarget(verse_key=word_id[len(VERSE_WORD_PREFIX) :], mode=HighlightMode.VERSE)

    verse_key, sep, index = word_id.rpartition(WORD_INDEX_SEPARATOR)
    if not sep:
        return WordTarget(verse_key=word_id, mode=HighlightMode.WORD)

    return WordTarget(
        verse_key=verse_key,
        mode=HighlightMode.WORD,
        word_index=int(index) if index.isdigit() else None,
    )


def verse_word_id(verse: str) -> str:
    """Build the whole-verse highlight id for a verse key."""
    return f"{VERSE_WORD_PREFIX}{verse}"


def single_word_id(verse: str, index: int) -> str:
    """Build the single-word highlight id for word ``index`` of ``verse``."""
    return f"{verse}{WORD_INDEX_SEPARATOR}{index}"


def channel_name(code: str, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    """Name of the real-time channel for a session code."""
    return f"{prefix}{code}"


def is_valid_code(code: str) -> bool:
    """Check that a session code is exactly six digits."""
    return bool(_CODE_RE.match(code))

