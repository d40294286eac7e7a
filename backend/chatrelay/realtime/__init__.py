"""Real-time layer: WebSocket gateway, room registry and typing presence.

Components:
    - RoomRegistry: id-indexed connections and room membership, fan-out.
    - TypingTracker: relays typing indicators to conversation rooms.
    - router: the ``/ws`` WebSocket endpoint.
"""
from .manager import Connection, RoomRegistry, conversation_room, user_room
from .presence import TypingTracker

__all__ = ["Connection", "RoomRegistry", "TypingTracker", "conversation_room", "user_room"]
