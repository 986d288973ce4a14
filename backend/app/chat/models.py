"""Data models for chat sessions and messages.

Session and ChatMessage are pydantic models so they serialise straight into
outbound event payloads. The normalisation helpers implement the input
hygiene rules: trim, length-cap, default. They never raise.
"""
import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_USERNAME = "Anonymous"
DEFAULT_ROOM = "General"
MAX_USERNAME_LENGTH = 32
MAX_MESSAGE_LENGTH = 1000


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def coerce_text(value: Any) -> str:
    """Turn an arbitrary payload value into a string (None becomes "")."""
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def normalize_username(
    value: Any,
    max_length: int = MAX_USERNAME_LENGTH,
    default: str = DEFAULT_USERNAME,
) -> str:
    """Trim and cap a display name, falling back to the default when empty."""
    return coerce_text(value).strip()[:max_length] or default


def normalize_room(value: Any, default: str = DEFAULT_ROOM) -> str:
    """Trim a room name, falling back to the default room when empty."""
    return coerce_text(value).strip() or default


def truncate_text(value: Any, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    return coerce_text(value)[:max_length]


class Session(BaseModel):
    """A connection's chosen identity and current room.

    Attributes:
        connection_id: Opaque transport identifier of the connection.
        username: Normalised display name.
        room: Name of the room the connection last joined.
    """
    connection_id: str = Field(..., description="Transport connection ID")
    username: str = Field(..., description="Display name shown to other users")
    room: str = Field(..., description="Current room name")


class ChatMessage(BaseModel):
    """A room message as stored in history and broadcast to clients.

    Immutable once created. ``ts`` is assigned by the server on receipt.

    Attributes:
        username: Author's display name at the time of sending.
        text: Message body, already truncated.
        ts: Milliseconds since epoch.
    """
    model_config = ConfigDict(frozen=True)

    username: str = Field(..., description="Author display name")
    text: str = Field(..., description="Message body")
    ts: int = Field(default_factory=now_ms, description="Milliseconds since epoch")
