"""Presence and messaging engine.

The engine is the protocol state machine. ``dispatch`` takes one inbound
event plus the originating connection ID, mutates the connection registry
and room store, and returns the outbound events the transport must deliver.
It performs no I/O, so it can be unit-tested without a WebSocket.

Connection states:
    - unjoined: no session (initial state, and after leaveRoom)
    - joined: session present, member of the session's room

Known behaviours kept on purpose:
    - Joining another room while joined does not leave the old room unless
      ``leave_previous_on_join`` is enabled, so the old roster keeps a
      "ghost" entry. Disconnect only cleans up the current room.
    - Display names are not unique. Private messages go to the first
      roster entry (in join order) with an exact name match.
    - Private-message text is truncated to ``max_message_length``, the same
      cap as room messages, instead of being forwarded unbounded.
"""
import logging
from typing import Callable, Dict, List, Optional

from app.config import RoomSettings

from .events import (
    Disconnect,
    InboundEvent,
    JoinRoom,
    LeaveRoom,
    OutboundEvent,
    SendChatMessage,
    SendPrivateMessage,
    StopTyping,
    Typing,
    joined_payload,
    message_payload,
    private_message_payload,
    to_room,
    to_room_except,
    unicast,
)
from .models import (
    ChatMessage,
    Session,
    normalize_room,
    normalize_username,
    now_ms,
    truncate_text,
)
from .registry import ConnectionRegistry
from .rooms import RoomStore

logger = logging.getLogger(__name__)

# User-facing notices
JOIN_FIRST_NOTICE = "Please join a room first"
PM_JOIN_FIRST_NOTICE = "Join a room first"
ROOM_NOT_FOUND_NOTICE = "Room not found"


class ChatEngine:
    """Routes inbound events to handlers and builds outbound events.

    Args:
        rooms: Room store shared by all connections.
        registry: Connection registry shared by all connections.
        settings: Limits and defaults (username/message caps, history sizes).
        clock: Returns the current time in milliseconds since epoch.
    """

    def __init__(
        self,
        rooms: RoomStore,
        registry: ConnectionRegistry,
        settings: Optional[RoomSettings] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.rooms = rooms
        self.registry = registry
        self.settings = settings or RoomSettings()
        self._clock = clock
        self._handlers: Dict[type, Callable[[str, InboundEvent], List[OutboundEvent]]] = {
            JoinRoom: self._on_join,
            LeaveRoom: self._on_leave,
            SendChatMessage: self._on_chat_message,
            Typing: self._on_typing,
            StopTyping: self._on_stop_typing,
            SendPrivateMessage: self._on_private_message,
            Disconnect: self._on_disconnect,
        }

    @classmethod
    def from_settings(
        cls, settings: RoomSettings, clock: Callable[[], int] = now_ms
    ) -> "ChatEngine":
        """Build an engine with a fresh room store and registry."""
        rooms = RoomStore(
            history_limit=settings.history_limit,
            history_replay=settings.history_replay,
        )
        registry = ConnectionRegistry(
            max_username_length=settings.max_username_length,
            default_username=settings.default_username,
            default_room=settings.default_room,
        )
        return cls(rooms, registry, settings, clock)

    def dispatch(self, connection_id: str, event: InboundEvent) -> List[OutboundEvent]:
        """Apply one inbound event and return the events to deliver, in order."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"[Engine] No handler for {type(event).__name__}")
            return []
        return handler(connection_id, event)

    def rooms_touched(self, connection_id: str, event: InboundEvent) -> List[str]:
        """Names of the rooms an event may read or write, sorted.

        The transport holds a lock for each of these rooms while the event
        is dispatched and its results queued.
        """
        session = self.registry.get_session(connection_id)
        touched = set()
        if isinstance(event, JoinRoom):
            touched.add(normalize_room(event.room, self.settings.default_room))
            if session and self.settings.leave_previous_on_join:
                touched.add(session.room)
        elif session:
            touched.add(session.room)
        return sorted(touched)

    # =========================================================================
    # Membership
    # =========================================================================

    def _on_join(self, connection_id: str, event: JoinRoom) -> List[OutboundEvent]:
        username = normalize_username(
            event.username,
            self.settings.max_username_length,
            self.settings.default_username,
        )
        room_name = normalize_room(event.room, self.settings.default_room)

        events: List[OutboundEvent] = []
        previous = self.registry.get_session(connection_id)
        if (previous
                and self.settings.leave_previous_on_join
                and previous.room != room_name):
            events.extend(
                self._depart(connection_id, previous, f"{previous.username} has left the room")
            )

        self.registry.set_session(connection_id, username, room_name)
        self.rooms.add_member(room_name, connection_id, username)

        users = self.rooms.roster_names(room_name)
        history = self.rooms.recent_history(room_name, self.settings.history_replay)
        logger.info(f"[Engine] [{room_name}] {username} joined ({connection_id})")

        events.append(
            unicast(connection_id, "joined", joined_payload(room_name, username, users, history))
        )
        events.append(
            to_room_except(room_name, connection_id, "system", f"{username} has joined the room")
        )
        events.append(to_room(room_name, "users", list(users)))
        return events

    def _on_leave(self, connection_id: str, event: LeaveRoom) -> List[OutboundEvent]:
        session = self.registry.get_session(connection_id)
        if session is None:
            return []

        events: List[OutboundEvent] = []
        if self.rooms.get_room(session.room) is not None:
            events.append(
                unicast(connection_id, "left", {"room": session.room, "username": session.username})
            )
            events.extend(
                self._depart(connection_id, session, f"{session.username} has left the room")
            )
            logger.info(f"[Engine] [{session.room}] {session.username} left ({connection_id})")
        self.registry.remove_session(connection_id)
        return events

    def _on_disconnect(self, connection_id: str, event: Disconnect) -> List[OutboundEvent]:
        session = self.registry.remove_session(connection_id)
        if session is None:
            logger.info(f"[Engine] Connection {connection_id} closed ({event.reason})")
            return []

        logger.info(
            f"[Engine] Connection {connection_id} closed ({session.username}) - {event.reason}"
        )
        return self._depart(connection_id, session, f"{session.username} disconnected")

    def _depart(self, connection_id: str, session: Session, notice: str) -> List[OutboundEvent]:
        """Drop a connection from its session's room and tell who remains."""
        if self.rooms.get_room(session.room) is None:
            return []
        self.rooms.remove_member(session.room, connection_id)
        return [
            to_room_except(session.room, connection_id, "system", notice),
            to_room(session.room, "users", self.rooms.roster_names(session.room)),
        ]

    # =========================================================================
    # Messaging
    # =========================================================================

    def _on_chat_message(
        self, connection_id: str, event: SendChatMessage
    ) -> List[OutboundEvent]:
        session = self.registry.get_session(connection_id)
        if session is None:
            return [unicast(connection_id, "system", JOIN_FIRST_NOTICE)]

        message = ChatMessage(
            username=session.username,
            text=truncate_text(event.text, self.settings.max_message_length),
            ts=self._clock(),
        )
        self.rooms.append_history(session.room, message)
        logger.info(f"[Engine] [{session.room}] {session.username}: {message.text[:50]}")
        return [to_room(session.room, "message", message_payload(message))]

    def _on_typing(self, connection_id: str, event: Typing) -> List[OutboundEvent]:
        session = self.registry.get_session(connection_id)
        if session is None:
            return []
        return [to_room(session.room, "typing", {"username": session.username})]

    def _on_stop_typing(self, connection_id: str, event: StopTyping) -> List[OutboundEvent]:
        session = self.registry.get_session(connection_id)
        if session is None:
            return []
        return [to_room(session.room, "stopTyping", {})]

    def _on_private_message(
        self, connection_id: str, event: SendPrivateMessage
    ) -> List[OutboundEvent]:
        session = self.registry.get_session(connection_id)
        if session is None:
            return [unicast(connection_id, "system", PM_JOIN_FIRST_NOTICE)]
        if self.rooms.get_room(session.room) is None:
            return [unicast(connection_id, "system", ROOM_NOT_FOUND_NOTICE)]

        target_id = self.rooms.find_member(session.room, event.to)
        if target_id is None:
            return [unicast(connection_id, "system", f"User not found in room: {event.to}")]

        # capped like room text; never stored in history
        text = truncate_text(event.message, self.settings.max_message_length)
        logger.info(f"[Engine] PM from {session.username} to {event.to}")
        return [
            unicast(
                target_id,
                "privateMessage",
                private_message_payload(session.username, text, self._clock()),
            ),
            unicast(connection_id, "system", f"Private message sent to {event.to}"),
        ]
