"""WebSocket connection manager for real-time chat rooms.

This module is the transport side of the chat hub. It owns the live
WebSocket of every connection, feeds inbound events to the ChatEngine and
delivers the outbound events the engine returns.

Key features:
    - Backend-assigned connection IDs (UUID4) on accept
    - Unicast, room multicast and room-multicast-excluding-sender delivery
    - Per-room asyncio.Lock: an event's state change and the queuing of its
      frames run as one unit, without serialising unrelated rooms
    - One outbox (asyncio.Queue) and one writer task per connection, so a
      slow or stalled client never holds a room lock
    - Exactly one Disconnect event per closed connection

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Performance Notes:
    - Frames reach each connection in the order they were queued
    - Socket writes happen outside the room locks, in the writer tasks
    - A connection with MAX_PENDING_FRAMES unsent frames drops new ones
    - Failed sends are logged and skipped; the failing connection's own
      receive loop reports the disconnect
"""
import asyncio
import logging
import uuid
from contextlib import AsyncExitStack
from typing import Dict, List

from fastapi import WebSocket

from .engine import ChatEngine
from .events import DeliveryTarget, Disconnect, InboundEvent, OutboundEvent

logger = logging.getLogger(__name__)

# Unsent frames kept per connection before new ones are dropped
MAX_PENDING_FRAMES = 1000


class ConnectionManager:
    """Manages WebSocket connections and event delivery for all chat rooms.

    Note:
        One instance is created per application (see app.main.create_app)
        and shared by every WebSocket handler through ``app.state``.
    """

    def __init__(self, engine: ChatEngine, max_pending_frames: int = MAX_PENDING_FRAMES) -> None:
        """Initialize with the engine whose events this manager delivers."""
        self.engine = engine
        self.max_pending_frames = max_pending_frames

        # connection_id -> live WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

        # connection_id -> frames waiting for the writer task
        self._outboxes: Dict[str, asyncio.Queue] = {}
        self._writers: Dict[str, asyncio.Task] = {}

        # room name -> lock serialising handlers that touch the room
        self._room_locks: Dict[str, asyncio.Lock] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a WebSocket connection and assign it a connection ID.

        Starts the connection's writer task.

        Returns:
            The backend-generated connection ID. The connection starts
            unjoined, with no session.
        """
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        outbox: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending_frames)
        self.active_connections[connection_id] = websocket
        self._outboxes[connection_id] = outbox
        self._writers[connection_id] = asyncio.create_task(
            self._writer(websocket, outbox)
        )
        logger.info(f"[Hub] Socket connected: {connection_id}")
        return connection_id

    async def handle(self, connection_id: str, event: InboundEvent) -> List[OutboundEvent]:
        """Dispatch one inbound event and queue its results.

        Locks for every room the event touches are held (in sorted order)
        while the engine runs and the frames are queued. Nothing is awaited
        on a socket under the locks.

        Returns:
            The outbound events that were queued.
        """
        room_names = self.engine.rooms_touched(connection_id, event)
        async with AsyncExitStack() as stack:
            for name in room_names:
                await stack.enter_async_context(self.room_lock(name))
            events = self.engine.dispatch(connection_id, event)
            self.deliver(events)
        return events

    async def disconnect(self, connection_id: str, reason: str = "") -> List[OutboundEvent]:
        """Forget a closed connection and run the implicit leave.

        The WebSocket, its outbox and its writer are dropped first so
        nothing is sent to it afterwards.
        """
        self.active_connections.pop(connection_id, None)
        self._outboxes.pop(connection_id, None)
        writer = self._writers.pop(connection_id, None)
        if writer is not None:
            writer.cancel()
        return await self.handle(connection_id, Disconnect(reason=reason))

    def room_lock(self, room: str) -> asyncio.Lock:
        lock = self._room_locks.get(room)
        if lock is None:
            lock = asyncio.Lock()
            self._room_locks[room] = lock
        return lock

    def recipients(self, event: OutboundEvent) -> List[str]:
        """Resolve an outbound event's target to connection IDs."""
        if event.target == DeliveryTarget.UNICAST:
            return [event.connection_id] if event.connection_id else []

        members = self.engine.rooms.member_ids(event.room) if event.room else []
        if event.target == DeliveryTarget.ROOM_EXCEPT_SENDER:
            return [cid for cid in members if cid != event.connection_id]
        return members

    def deliver(self, events: List[OutboundEvent]) -> None:
        """Queue events in order on the outbox of every open recipient."""
        for event in events:
            message = event.to_wire()
            for cid in self.recipients(event):
                outbox = self._outboxes.get(cid)
                if outbox is None:
                    continue
                try:
                    outbox.put_nowait(message)
                except asyncio.QueueFull:
                    logger.warning(
                        "[Hub] Outbox full for %s, dropping %s", cid, event.event
                    )

    async def flush(self, *connection_ids: str) -> None:
        """Wait until the given connections (default: all) have sent every queued frame."""
        ids = connection_ids or tuple(self._outboxes)
        outboxes = [self._outboxes[cid] for cid in ids if cid in self._outboxes]
        await asyncio.gather(*[outbox.join() for outbox in outboxes])

    async def close(self) -> None:
        """Stop every writer task. Called on application shutdown."""
        writers = list(self._writers.values())
        self._writers.clear()
        for writer in writers:
            writer.cancel()
        await asyncio.gather(*writers, return_exceptions=True)
        logger.info(f"[Hub] Stopped {len(writers)} writer task(s)")

    async def _writer(self, connection: WebSocket, outbox: asyncio.Queue) -> None:
        """Send queued frames to one connection until it is cancelled."""
        while True:
            message = await outbox.get()
            try:
                await self._safe_send(connection, message)
            finally:
                outbox.task_done()

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Args:
            connection: The WebSocket to send to.
            message: JSON-serializable message to send.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def get_connection_count(self) -> int:
        """Get the number of open connections."""
        return len(self.active_connections)
