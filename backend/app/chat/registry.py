"""Connection registry: connection ID -> Session.

The registry is the only owner of Session objects. Rooms refer to
connections by ID only, so nothing here points into the room store.
"""
import logging
from typing import Dict, List, Optional

from .models import (
    DEFAULT_ROOM,
    DEFAULT_USERNAME,
    MAX_USERNAME_LENGTH,
    Session,
    normalize_room,
    normalize_username,
)

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks the session (username + current room) of each connection."""

    def __init__(
        self,
        max_username_length: int = MAX_USERNAME_LENGTH,
        default_username: str = DEFAULT_USERNAME,
        default_room: str = DEFAULT_ROOM,
    ) -> None:
        self.max_username_length = max_username_length
        self.default_username = default_username
        self.default_room = default_room

        # connection_id -> Session
        self._sessions: Dict[str, Session] = {}

    def set_session(self, connection_id: str, username: str, room: str) -> Session:
        """Insert or replace the session for a connection.

        The trim/default rules are applied again here so callers cannot
        store an empty name or room.
        """
        session = Session(
            connection_id=connection_id,
            username=normalize_username(
                username, self.max_username_length, self.default_username
            ),
            room=normalize_room(room, self.default_room),
        )
        self._sessions[connection_id] = session
        return session

    def get_session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def remove_session(self, connection_id: str) -> Optional[Session]:
        """Remove a connection's session. No-op if there is none."""
        session = self._sessions.pop(connection_id, None)
        if session:
            logger.debug(f"[Registry] Session removed for {connection_id}")
        return session

    def sessions_in_room(self, room: str) -> List[Session]:
        return [s for s in self._sessions.values() if s.room == room]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions
