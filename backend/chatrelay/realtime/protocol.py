"""WebSocket wire protocol.

Every frame is a JSON object ``{"event": <name>, "data": {...}, "ref": ...}``.
``ref`` is an optional client correlation id (string or integer) echoed back,
as received, on ``ack``, ``error``, ``room_joined`` and ``room_left`` frames.

Each client event name maps to exactly one payload model below; frames are
parsed through a discriminated union, so an unknown event name or a payload
of the wrong shape is rejected as a whole instead of being half-processed.

Client -> Server:
    - join_room {room}
    - leave_room {room}
    - send_message {conversationId | recipientId, content, messageType, replyTo?, payload?}
    - start_typing {conversationId}
    - stop_typing {conversationId}
    - message_seen {messageId, room?, userId?}
    - ping

Server -> Client: see :class:`ServerEvent`.
"""
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from chatrelay.errors import InvalidRequest
from chatrelay.messages.schemas import SendMessageRequest


class ServerEvent(str, Enum):
    """Names of every event the server pushes."""
    CONNECTED = "connected"
    ROOM_JOINED = "room_joined"
    ROOM_LEFT = "room_left"
    RECEIVE_MESSAGE = "receive_message"
    CONVERSATION_UPDATED = "conversation_updated"
    USER_TYPING = "user_typing"
    USER_TYPING_STOP = "user_typing_stop"
    MESSAGE_SEEN = "message_seen"
    MESSAGES_READ = "messages_read"
    REACTION_ADDED = "reaction_added"
    REACTION_REMOVED = "reaction_removed"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    ACK = "ack"
    ERROR = "error"
    PONG = "pong"


# =============================================================================
# Client event payloads
# =============================================================================


class RoomPayload(BaseModel):
    room: str = Field(..., min_length=1)


class TypingPayload(BaseModel):
    conversationId: str = Field(..., min_length=1)


class MessageSeenPayload(BaseModel):
    """``room`` and ``userId`` are accepted for compatibility and ignored;
    the reader is always the connection's bound identity."""
    messageId: str = Field(..., min_length=1)
    room: Optional[str] = None
    userId: Optional[str] = None


class _ClientFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")
    ref: Optional[Union[str, int]] = None


class JoinRoom(_ClientFrame):
    event: Literal["join_room"]
    data: RoomPayload


class LeaveRoom(_ClientFrame):
    event: Literal["leave_room"]
    data: RoomPayload


class SendMessage(_ClientFrame):
    event: Literal["send_message"]
    data: SendMessageRequest


class StartTyping(_ClientFrame):
    event: Literal["start_typing"]
    data: TypingPayload


class StopTyping(_ClientFrame):
    event: Literal["stop_typing"]
    data: TypingPayload


class MessageSeen(_ClientFrame):
    event: Literal["message_seen"]
    data: MessageSeenPayload


class Ping(_ClientFrame):
    event: Literal["ping"]
    data: Optional[dict] = None


ClientEvent = Annotated[
    Union[JoinRoom, LeaveRoom, SendMessage, StartTyping, StopTyping, MessageSeen, Ping],
    Field(discriminator="event"),
]

_client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(frame: object) -> ClientEvent:
    """Parse a decoded JSON frame into its tagged client event.

    Bare-string room payloads (``{"event": "join_room", "data": "user:1"}``)
    are accepted for the room events, matching what older clients emit.

    Raises:
        InvalidRequest: Unknown event name or malformed payload.
    """
    if not isinstance(frame, dict):
        raise InvalidRequest("Frame must be a JSON object")
    if frame.get("event") in ("join_room", "leave_room") and isinstance(frame.get("data"), str):
        frame = {**frame, "data": {"room": frame["data"]}}
    try:
        return _client_event_adapter.validate_python(frame)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidRequest(
            f"Invalid '{frame.get('event')}' frame: {location} {first.get('msg', '')}".strip()
        )
