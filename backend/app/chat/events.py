"""Inbound and outbound protocol events.

Wire format (both directions) is a JSON object::

    {"event": "<name>", "data": <payload>}

Inbound events are parsed into one pydantic model per event name. Payload
fields are coerced to strings before validation, so a client sending a
number or null as a username never causes a validation error.

Outbound events carry a delivery target:
    - UNICAST: exactly one connection (``connection_id``)
    - ROOM: every connection in ``room``
    - ROOM_EXCEPT_SENDER: every connection in ``room`` except ``connection_id``
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError, field_validator

from .models import ChatMessage, coerce_text

logger = logging.getLogger(__name__)


# =============================================================================
# Inbound events
# =============================================================================


class InboundEvent(BaseModel):
    """Base class for events sent by clients."""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_strings(cls, value: Any) -> Any:
        return coerce_text(value)


class JoinRoom(InboundEvent):
    username: str = ""
    room: str = ""


class LeaveRoom(InboundEvent):
    pass


class SendChatMessage(InboundEvent):
    text: str = ""


class Typing(InboundEvent):
    pass


class StopTyping(InboundEvent):
    pass


class SendPrivateMessage(InboundEvent):
    to: str = ""
    message: str = ""


class Disconnect(InboundEvent):
    """Synthesised by the transport when a connection closes."""
    reason: str = ""


INBOUND_EVENTS: Dict[str, Type[InboundEvent]] = {
    "joinRoom": JoinRoom,
    "leaveRoom": LeaveRoom,
    "chatMessage": SendChatMessage,
    "typing": Typing,
    "stopTyping": StopTyping,
    "privateMessage": SendPrivateMessage,
}


def parse_inbound(frame: Any) -> Optional[InboundEvent]:
    """Decode a JSON frame into an inbound event.

    Returns None for anything that is not a recognised event; the caller
    drops it without closing the connection.
    """
    if not isinstance(frame, dict):
        logger.debug(f"[Events] Ignoring non-object frame: {type(frame).__name__}")
        return None

    name = frame.get("event")
    model = INBOUND_EVENTS.get(name) if isinstance(name, str) else None
    if model is None:
        logger.debug(f"[Events] Ignoring unknown event: {name!r}")
        return None

    data = frame.get("data")
    try:
        if model is SendChatMessage:
            # chatMessage carries its text as a bare payload
            if isinstance(data, dict):
                return SendChatMessage(text=data.get("text"))
            return SendChatMessage(text=data)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            logger.debug(f"[Events] Ignoring {name} with non-object payload")
            return None
        return model(**{k: v for k, v in data.items() if k in model.model_fields})
    except ValidationError as exc:
        logger.debug(f"[Events] Invalid {name} payload: {exc}")
        return None


# =============================================================================
# Outbound events
# =============================================================================


class DeliveryTarget(str, Enum):
    """Who an outbound event is delivered to."""
    UNICAST = "unicast"
    ROOM = "room"
    ROOM_EXCEPT_SENDER = "room_except_sender"


class OutboundEvent(BaseModel):
    """An event the transport must deliver.

    Attributes:
        event: Wire event name (joined, left, message, system, users, ...).
        data: JSON-serialisable payload.
        target: Delivery target kind.
        connection_id: Recipient (UNICAST) or excluded sender (ROOM_EXCEPT_SENDER).
        room: Room to multicast to (ROOM, ROOM_EXCEPT_SENDER).
    """
    event: str
    data: Any = None
    target: DeliveryTarget
    connection_id: Optional[str] = None
    room: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}


def unicast(connection_id: str, event: str, data: Any = None) -> OutboundEvent:
    return OutboundEvent(
        event=event, data=data, target=DeliveryTarget.UNICAST, connection_id=connection_id
    )


def to_room(room: str, event: str, data: Any = None) -> OutboundEvent:
    return OutboundEvent(event=event, data=data, target=DeliveryTarget.ROOM, room=room)


def to_room_except(room: str, sender_id: str, event: str, data: Any = None) -> OutboundEvent:
    return OutboundEvent(
        event=event,
        data=data,
        target=DeliveryTarget.ROOM_EXCEPT_SENDER,
        room=room,
        connection_id=sender_id,
    )


# Payload builders for the outbound events with structured payloads


def message_payload(message: ChatMessage) -> Dict[str, Any]:
    return message.model_dump()


def joined_payload(
    room: str, username: str, users: List[str], history: List[ChatMessage]
) -> Dict[str, Any]:
    return {
        "room": room,
        "username": username,
        "users": users,
        "history": [message_payload(m) for m in history],
    }


def private_message_payload(sender: str, message: str, ts: int) -> Dict[str, Any]:
    return {"from": sender, "message": message, "ts": ts}


OutboundEvents = List[OutboundEvent]