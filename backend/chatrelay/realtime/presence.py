"""Typing presence relay.

Typing signals are never persisted and never timed out server-side; clients
stop their own indicator after a short idle window. The tracker only keeps
enough process-local state to send a final ``user_typing_stop`` when a typing
user's last connection leaves the room or disconnects.
"""
import logging
from typing import Dict, Iterable, Set

from chatrelay.errors import Forbidden

from .manager import Connection, RoomRegistry, conversation_room
from .protocol import ServerEvent

logger = logging.getLogger(__name__)


class TypingTracker:
    """Relays start/stop typing signals within conversation rooms.

    The sender's own connections are excluded at fan-out time, so clients
    never see an echo of their own typing.
    """

    def __init__(self, registry: RoomRegistry) -> None:
        self._registry = registry
        # room -> user ids currently typing
        self._typing: Dict[str, Set[str]] = {}

    def typing_users(self, conversation_id: str) -> Set[str]:
        return set(self._typing.get(conversation_room(conversation_id), set()))

    async def start(self, connection: Connection, conversation_id: str) -> None:
        room = self._require_member(connection, conversation_id)
        self._typing.setdefault(room, set()).add(connection.user_id)
        await self._relay(room, ServerEvent.USER_TYPING, connection.user_id, conversation_id)

    async def stop(self, connection: Connection, conversation_id: str) -> None:
        room = self._require_member(connection, conversation_id)
        self._discard(room, connection.user_id)
        await self._relay(room, ServerEvent.USER_TYPING_STOP, connection.user_id, conversation_id)

    async def rooms_left(self, connection: Connection, rooms: Iterable[str]) -> None:
        """Clear typing state for rooms a connection is no longer in.

        Registered as a departure hook on the registry, so it runs after
        leave, eviction, failed delivery and disconnect. The stop signal is
        only sent when none of the user's other connections remain in the room.
        """
        for room in rooms:
            kind, _, conversation_id = room.partition(":")
            if kind != "conversation" or connection.user_id not in self.typing_users(conversation_id):
                continue
            still_present = any(
                room in other.rooms
                for other in self._registry.user_connections(connection.user_id)
            )
            if still_present:
                continue
            self._discard(room, connection.user_id)
            await self._relay(room, ServerEvent.USER_TYPING_STOP, connection.user_id, conversation_id)

    def _require_member(self, connection: Connection, conversation_id: str) -> str:
        room = conversation_room(conversation_id)
        if not self._registry.is_member(connection.id, room):
            raise Forbidden(f"Join {room} before sending typing signals")
        return room

    def _discard(self, room: str, user_id: str) -> None:
        users = self._typing.get(room)
        if users is None:
            return
        users.discard(user_id)
        if not users:
            del self._typing[room]

    async def _relay(self, room: str, event: ServerEvent, user_id: str, conversation_id: str) -> None:
        await self._registry.fan_out(
            room,
            event.value,
            {"userId": user_id, "conversationId": conversation_id},
            exclude_user=user_id,
        )
