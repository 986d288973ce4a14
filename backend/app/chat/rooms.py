"""In-memory room store.

A Room holds a roster (connection ID -> display name) and a bounded message
history. Rooms are created lazily on first join and are never deleted.

History retention:
    - At most ``history_limit`` messages are kept per room (default 200);
      appending beyond that evicts the oldest entry.
    - Only the most recent ``history_replay`` messages (default 50) are
      handed to a joining client.

Thread Safety:
    Not thread-safe. Callers serialise access per room (see
    ConnectionManager.room_lock).
"""
import logging
from collections import deque
from typing import Deque, Dict, List, Optional

from .models import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 200
DEFAULT_HISTORY_REPLAY = 50


class Room:
    """A named channel with a member roster and bounded history.

    Attributes:
        name: Case-sensitive room name.
        roster: connection ID -> display name, in join order.
        history: Stored messages, oldest first.
    """

    def __init__(self, name: str, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.name = name
        self.roster: Dict[str, str] = {}
        self.history: Deque[ChatMessage] = deque(maxlen=history_limit)

    def __repr__(self) -> str:
        return f"Room({self.name!r}, members={len(self.roster)}, messages={len(self.history)})"


class RoomStore:
    """Owns every Room, keyed by name."""

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        history_replay: int = DEFAULT_HISTORY_REPLAY,
    ) -> None:
        self.history_limit = history_limit
        self.history_replay = history_replay
        # room name -> Room (dict keeps creation order)
        self._rooms: Dict[str, Room] = {}

    def ensure_room(self, name: str) -> Room:
        """Return the named room, creating an empty one if needed."""
        room = self._rooms.get(name)
        if room is None:
            room = Room(name, self.history_limit)
            self._rooms[name] = room
            logger.info(f"[Rooms] Created room {name!r}")
        return room

    def get_room(self, name: str) -> Optional[Room]:
        return self._rooms.get(name)

    def rooms(self) -> List[Room]:
        """All rooms in creation order."""
        return list(self._rooms.values())

    # =========================================================================
    # Roster
    # =========================================================================

    def add_member(self, name: str, connection_id: str, username: str) -> Room:
        """Add (or rename) a connection in a room's roster."""
        room = self.ensure_room(name)
        room.roster[connection_id] = username
        return room

    def remove_member(self, name: str, connection_id: str) -> Optional[str]:
        """Remove a connection from a room's roster.

        Returns:
            The removed display name, or None if the room or member was
            absent.
        """
        room = self._rooms.get(name)
        if room is None:
            return None
        return room.roster.pop(connection_id, None)

    def roster_names(self, name: str) -> List[str]:
        """Snapshot of display names in join order (duplicates allowed)."""
        room = self._rooms.get(name)
        return list(room.roster.values()) if room else []

    def member_ids(self, name: str) -> List[str]:
        room = self._rooms.get(name)
        return list(room.roster) if room else []

    def find_member(self, name: str, username: str) -> Optional[str]:
        """Connection ID of the first roster entry with this exact display name."""
        room = self._rooms.get(name)
        if room is None:
            return None
        for connection_id, member_name in room.roster.items():
            if member_name == username:
                return connection_id
        return None

    # =========================================================================
    # History
    # =========================================================================

    def append_history(self, name: str, message: ChatMessage) -> ChatMessage:
        """Append a message; the oldest entry is evicted past history_limit."""
        room = self.ensure_room(name)
        room.history.append(message)
        return message

    def recent_history(self, name: str, n: Optional[int] = None) -> List[ChatMessage]:
        """The last ``n`` messages (default history_replay), oldest first."""
        if n is None:
            n = self.history_replay
        room = self._rooms.get(name)
        if room is None or n <= 0:
            return []
        messages = list(room.history)
        return messages[-n:]

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, name: object) -> bool:
        return name in self._rooms
