"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - GET /: Bundled browser chat client (HTML)
    - GET /rooms: Rooms with member and message counts
    - GET /rooms/{room}/history: Recent message history
    - WebSocket /ws: Real-time chat messaging

The WebSocket protocol exchanges JSON frames shaped
{"event": <name>, "data": <payload>}.

Inbound events:
    - joinRoom {username, room}
    - leaveRoom
    - chatMessage <text>
    - typing / stopTyping
    - privateMessage {to, message}

Outbound events:
    - joined {room, username, users, history}
    - left {room, username}
    - message {username, text, ts}
    - system <text>
    - users [names]
    - typing {username} / stopTyping {}
    - privateMessage {from, message, ts}
"""
import html
import json
import logging
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse

from app.config import AppConfig

from .events import parse_inbound
from .manager import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter()

# HTML template directory
TEMPLATES_DIR = Path(__file__).parent / "templates"


def get_manager(conn: Any) -> ConnectionManager:
    """The application's ConnectionManager, from a Request or WebSocket."""
    return conn.app.state.chat_manager


def get_app_config(conn: Any) -> AppConfig:
    return conn.app.state.config


@router.get("/", response_class=HTMLResponse)
async def chat_page(request: Request) -> HTMLResponse:
    """Serve the bundled chat client.

    The room selector is filled from the configured preset rooms.
    """
    rooms_cfg = get_app_config(request).rooms
    options = "\n".join(
        f"          <option>{html.escape(name)}</option>" for name in rooms_cfg.preset_rooms
    )
    items = "".join(
        f"<li>{html.escape(name)}</li>" for name in rooms_cfg.preset_rooms
    )

    template = (TEMPLATES_DIR / "chat.html").read_text(encoding="utf-8")
    content = template.replace("{{ room_options }}", options)
    content = content.replace("{{ room_items }}", items)
    content = content.replace(
        "{{ max_username_length }}", str(rooms_cfg.max_username_length)
    )
    return HTMLResponse(content=content)


@router.get("/rooms")
async def list_rooms(request: Request) -> JSONResponse:
    """List known rooms in creation order, then unvisited preset rooms.

    Returns:
        JSON array of {name, users, messages}.
    """
    store = get_manager(request).engine.rooms
    rooms = [
        {"name": room.name, "users": len(room.roster), "messages": len(room.history)}
        for room in store.rooms()
    ]
    for name in get_app_config(request).rooms.preset_rooms:
        if name not in store:
            rooms.append({"name": name, "users": 0, "messages": 0})
    return JSONResponse(rooms)


@router.get("/rooms/{room}/history")
async def get_room_history(
    request: Request,
    room: str,
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get the most recent messages of a room, oldest first.

    Reading history never creates a room; unknown rooms return an empty list.

    Example:
        GET /rooms/General/history?limit=20
    """
    store = get_manager(request).engine.rooms
    if limit is None:
        limit = store.history_replay
    limit = min(limit, store.history_limit)

    messages = store.recent_history(room, limit)
    return JSONResponse({
        "room": room,
        "messages": [msg.model_dump() for msg in messages],
    })


async def _read_frame(websocket: WebSocket) -> Any:
    """Receive one frame and decode it as JSON.

    Returns None for frames that are not valid JSON.

    Raises:
        WebSocketDisconnect: When the client has closed the connection.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))

    raw = message.get("text")
    if raw is None and message.get("bytes") is not None:
        raw = message["bytes"].decode("utf-8", errors="replace")
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("[WS] Dropping non-JSON frame")
        return None


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time chat.

    Protocol Flow:
        1. Client connects → Server assigns a connection ID (unjoined)
        2. Client sends: {event: "joinRoom", data: {username, room}}
           → Joiner gets "joined"; room gets "system" notice and "users"
        3. Client sends: {event: "chatMessage", data: "hi"}
           → Room gets {event: "message", data: {username, text, ts}}
        4. Client sends: {event: "leaveRoom"} → back to unjoined
        5. On disconnect → Room gets "system" notice and "users"

    Malformed frames are dropped; the connection stays open.
    """
    manager = get_manager(websocket)
    connection_id = await manager.connect(websocket)
    reason = "transport close"

    try:
        while True:
            frame = await _read_frame(websocket)
            event = parse_inbound(frame)
            if event is None:
                continue
            logger.debug("[WS] %s received: %s", connection_id, type(event).__name__)
            await manager.handle(connection_id, event)
    except WebSocketDisconnect as exc:
        reason = f"client disconnect (code {exc.code})"
    finally:
        await manager.disconnect(connection_id, reason)
