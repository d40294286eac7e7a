"""WebSocket gateway.

This module provides:
    - WebSocket /ws: authenticated, room-multiplexed real-time connection

Protocol Flow:
    1. Client connects with ``?token=<jwt>`` (or an Authorization header)
       → invalid credential: socket closed with 1008 before accept
       → Server sends: {event: "connected", data: {userId, connectionId, rooms}}
       (the connection is already in its personal room ``user:<id>``)
    2. Client sends: {event: "join_room", data: {room: "conversation:<id>"}}
       → Server sends: {event: "room_joined", data: {room, ref?}}
    3. Client sends: {event: "send_message", data: {...}, ref: "c1"}
       → Server fans out: {event: "receive_message", data: <message>}
       → Server sends: {event: "ack", data: {ref: "c1", messageData: <message>}}
    4. Client sends: {event: "start_typing" | "stop_typing", data: {conversationId}}
       → Other users in the room get: {event: "user_typing" | "user_typing_stop"}
    5. Client sends: {event: "message_seen", data: {messageId}}
       → Room gets: {event: "message_seen", data: {messageId, userId, ...}}
    6. On disconnect, or when a send to the socket fails, the connection
       leaves every room and typing state is cleared before cleanup ends.

Any failure of a client event is answered with
``{event: "error", data: {code, error, ref}}`` on the same connection only.
"""
import json
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chatrelay.auth.dependencies import websocket_token
from chatrelay.auth.service import TokenService
from chatrelay.errors import Forbidden, InvalidRequest, MessagingError, Unauthenticated
from chatrelay.services import Services, get_services

from .manager import Connection
from .protocol import (
    JoinRoom,
    LeaveRoom,
    MessageSeen,
    Ping,
    SendMessage,
    ServerEvent,
    StartTyping,
    StopTyping,
    parse_client_event,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _authorize_room(services: Services, connection: Connection, room: str) -> None:
    """Only one's own personal room and conversations one takes part in."""
    kind, _, target = room.partition(":")
    if not target:
        raise InvalidRequest(f"Invalid room name: {room}")
    if kind == "user":
        if target != connection.user_id:
            raise Forbidden("Cannot join another user's room")
    elif kind == "conversation":
        services.conversations.require_participant(target, connection.user_id)
    else:
        raise InvalidRequest(f"Unknown room type: {kind}")


def _with_ref(data: dict, ref: Optional[Union[str, int]]) -> dict:
    if ref is not None:
        data["ref"] = ref
    return data


async def _handle(services: Services, connection: Connection, event) -> Optional[dict]:
    """Apply one client event. Returns ack data, or None when nothing is acked."""
    registry = services.registry

    if isinstance(event, JoinRoom):
        room = event.data.room
        _authorize_room(services, connection, room)
        registry.join(connection.id, room)
        logger.info(
            f"[WS] {connection.user_id} joined {room} "
            f"({registry.get_room_size(room)} connections)"
        )
        await registry.send_to(
            connection.id, ServerEvent.ROOM_JOINED.value, _with_ref({"room": room}, event.ref)
        )
        return None

    if isinstance(event, LeaveRoom):
        room = event.data.room
        await registry.leave_room(connection.id, room)
        await registry.send_to(
            connection.id, ServerEvent.ROOM_LEFT.value, _with_ref({"room": room}, event.ref)
        )
        return None

    if isinstance(event, SendMessage):
        body = event.data
        message = await services.pipeline.send(
            sender_id=connection.user_id,
            content=body.content,
            message_type=body.messageType,
            conversation_id=body.conversationId,
            recipient_id=body.recipientId,
            reply_to=body.replyTo,
            payload=body.payload,
        )
        return {"messageData": message.model_dump(mode="json")}

    if isinstance(event, StartTyping):
        await services.typing.start(connection, event.data.conversationId)
        return None

    if isinstance(event, StopTyping):
        await services.typing.stop(connection, event.data.conversationId)
        return None

    if isinstance(event, MessageSeen):
        changed = await services.receipts.mark_seen(event.data.messageId, connection.user_id)
        return {"messageId": event.data.messageId, "changed": changed}

    if isinstance(event, Ping):
        await registry.send_to(connection.id, ServerEvent.PONG.value, {})
        return None

    raise InvalidRequest("Unsupported event")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    services: Services = Depends(get_services),
) -> None:
    """WebSocket endpoint for one authenticated client connection.

    SECURITY MODEL:
        - The identity comes from the verified bearer token only; ``userId``
          fields sent by the client are ignored.
        - A failed verification closes the socket before accept, so no room
          or message flow is reachable.
    """
    tokens = TokenService.from_config(services.config)
    try:
        identity = tokens.verify(websocket_token(websocket))
    except Unauthenticated as e:
        logger.warning(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    registry = services.registry
    connection = registry.register(websocket, identity.userId)

    try:
        await connection.send({
            "event": ServerEvent.CONNECTED.value,
            "data": {
                "userId": identity.userId,
                "connectionId": connection.id,
                "rooms": sorted(connection.rooms),
            },
        })

        # Main message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            ref = None
            try:
                if raw is None:
                    raise InvalidRequest("Binary frames are not supported")
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    raise InvalidRequest("Frame is not valid JSON")
                if isinstance(frame, dict):
                    ref = frame.get("ref")
                event = parse_client_event(frame)
                logger.debug("[WS] %s received: event=%s", connection.id, event.event)

                ack = await _handle(services, connection, event)
                if ack is not None and event.ref is not None:
                    await registry.send_to(
                        connection.id, ServerEvent.ACK.value, {"ref": event.ref, **ack}
                    )
            except MessagingError as e:
                if isinstance(e, InvalidRequest):
                    logger.warning(f"[WS] Invalid frame from {connection.user_id}: {e.message}")
                await registry.send_to(
                    connection.id, ServerEvent.ERROR.value, {**e.to_dict(), "ref": ref}
                )
            except WebSocketDisconnect:
                raise
            except Exception as e:
                logger.exception(f"[WS] Failed to handle frame from {connection.user_id}: {e}")
                await registry.send_to(
                    connection.id,
                    ServerEvent.ERROR.value,
                    {"error": "Internal error", "code": "internal_error", "ref": ref},
                )

            if connection.closed:
                logger.info(f"[WS] Connection {connection.id} was dropped, closing loop")
                break

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection.id} ({identity.userId}) disconnected")
    finally:
        await registry.drop(connection.id)
