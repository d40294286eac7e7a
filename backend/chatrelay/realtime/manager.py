"""Room registry: WebSocket connections, room membership and fan-out.

This module owns every room <-> connection edge in the process. Connections
and rooms are referenced by id/name only, so cleanup on disconnect is a
lookup-and-remove rather than chasing object references.

Key features:
    - Forward index (connection -> rooms) and reverse index (room -> connections)
    - Idempotent join/leave
    - Fan-out to the union of several rooms, each connection at most once
    - Optional exclusion of every connection of one user (typing echo)
    - Concurrent delivery with asyncio.gather(); a failing connection is
      dropped and never blocks the others
    - Per-connection FIFO send lock, so each subscriber observes events in
      the order fan-outs were scheduled
    - Departure hooks: every way a connection leaves rooms (leave, eviction,
      failed delivery, disconnect) ends in the same notification, which is
      where typing state gets cleared

Thread Safety:
    Designed for a single event loop. Registry mutations never await, so each
    one is atomic with respect to other coroutines; fan-out iterates over a
    snapshot, so a connection joining mid-fan-out may or may not receive the
    in-flight event, but the membership maps are never corrupted.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# 1011 = Internal Error
CLOSE_SEND_FAILED = 1011


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


@dataclass
class Connection:
    """One authenticated transport.

    Attributes:
        id: Registry-assigned connection id.
        websocket: Underlying transport handle.
        user_id: Identity bound by the gate; never changes.
        rooms: Names of the rooms this connection has joined.
        closed: Set once the registry dropped the connection; the gateway
            loop serving it stops reading.
    """
    id: str
    websocket: Any
    user_id: str
    rooms: Set[str] = field(default_factory=set)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    async def send(self, frame: dict) -> None:
        async with self.send_lock:
            await self.websocket.send_json(frame)


DepartureHook = Callable[[Connection, Set[str]], Awaitable[None]]


class RoomRegistry:
    """Manages connections and room membership for the whole process."""

    def __init__(self) -> None:
        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}

        # room name -> connection ids (reverse index)
        self.rooms: Dict[str, Set[str]] = {}

        self._departure_hooks: List[DepartureHook] = []

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def register(self, websocket: WebSocket, user_id: str) -> Connection:
        """Register an authenticated connection and join its personal room."""
        connection = Connection(id=str(uuid.uuid4()), websocket=websocket, user_id=user_id)
        self.connections[connection.id] = connection
        self.join(connection.id, user_room(user_id))
        logger.info(
            f"[Registry] Connection {connection.id} registered for user {user_id}. "
            f"{len(self.connections)} connections open"
        )
        return connection

    def disconnect(self, connection_id: str) -> Set[str]:
        """Remove a connection from every room it was in.

        Returns:
            The rooms the connection was a member of.
        """
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return set()

        left = set(connection.rooms)
        for room in left:
            self._drop_edge(connection_id, room)
        connection.rooms.clear()
        logger.info(
            f"[Registry] Connection {connection_id} (user {connection.user_id}) removed "
            f"from {len(left)} rooms"
        )
        return left

    async def drop(self, connection_id: str, close_code: Optional[int] = None) -> Set[str]:
        """Disconnect a connection and run the departure hooks for its rooms.

        Safe to call more than once: only the first call finds the connection.

        Args:
            close_code: When given, the transport is closed with this code so
                the loop reading from it ends.

        Returns:
            The rooms the connection was a member of.
        """
        connection = self.connections.get(connection_id)
        if connection is None:
            return set()
        connection.closed = True
        left = self.disconnect(connection_id)

        if close_code is not None:
            try:
                await connection.websocket.close(code=close_code)
            except Exception as e:
                logger.debug(f"[Registry] Close of connection {connection_id} failed: {e}")

        await self.departed(connection, left)
        return left

    def on_departure(self, hook: DepartureHook) -> None:
        """Register a coroutine called with (connection, rooms) whenever a
        connection stops being a member of some rooms."""
        self._departure_hooks.append(hook)

    async def departed(self, connection: Connection, rooms: Set[str]) -> None:
        if not rooms:
            return
        for hook in self._departure_hooks:
            try:
                await hook(connection, rooms)
            except Exception as e:
                logger.error(f"[Registry] Departure hook failed for {connection.id}: {e}")

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, connection_id: str, room: str) -> bool:
        """Add a connection to a room. Returns False if it was already a member."""
        connection = self.connections.get(connection_id)
        if connection is None or room in connection.rooms:
            return False
        connection.rooms.add(room)
        self.rooms.setdefault(room, set()).add(connection_id)
        return True

    def leave(self, connection_id: str, room: str) -> bool:
        """Remove a connection from a room. Returns False if it was not a member."""
        connection = self.connections.get(connection_id)
        if connection is None or room not in connection.rooms:
            return False
        connection.rooms.discard(room)
        self._drop_edge(connection_id, room)
        return True

    async def leave_room(self, connection_id: str, room: str) -> bool:
        """Leave a room and run the departure hooks if membership changed."""
        if not self.leave(connection_id, room):
            return False
        await self.departed(self.connections[connection_id], {room})
        return True

    async def evict(self, user_id: str, room: str, event: str) -> int:
        """Remove every connection of a user from a room.

        Each evicted connection is told with ``event`` (``{room}``), then the
        departure hooks run.

        Returns:
            Number of connections evicted.
        """
        evicted = [c for c in self.user_connections(user_id) if room in c.rooms]
        for connection in evicted:
            self.leave(connection.id, room)
            await self.send_to(connection.id, event, {"room": room})
            await self.departed(connection, {room})
        if evicted:
            logger.info(f"[Registry] Evicted {len(evicted)} connections of {user_id} from {room}")
        return len(evicted)

    def _drop_edge(self, connection_id: str, room: str) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[room]

    def is_member(self, connection_id: str, room: str) -> bool:
        return connection_id in self.rooms.get(room, set())

    def members(self, room: str) -> List[Connection]:
        return [
            self.connections[cid] for cid in self.rooms.get(room, set())
            if cid in self.connections
        ]

    def get_room_size(self, room: str) -> int:
        """Get the number of connections in a room."""
        return len(self.rooms.get(room, set()))

    def user_connections(self, user_id: str) -> List[Connection]:
        return self.members(user_room(user_id))

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def fan_out(
        self,
        rooms: Iterable[str],
        event: str,
        data: dict,
        exclude_user: Optional[str] = None,
    ) -> int:
        """Deliver ``{event, data}`` to every connection in the given rooms.

        A connection that belongs to several of the rooms receives the event
        once. Delivery is concurrent and best-effort: failed connections are
        dropped (closed, removed, departure hooks run) and are not reported
        to the caller.

        Args:
            rooms: Room names (a single name is also accepted).
            event: Server event name.
            data: JSON-serializable payload.
            exclude_user: Skip every connection bound to this user.

        Returns:
            Number of connections the event was delivered to.
        """
        if isinstance(rooms, str):
            rooms = [rooms]

        # Snapshot taken synchronously, before the first await.
        targets: Dict[str, Connection] = {}
        for room in rooms:
            for cid in self.rooms.get(room, set()):
                connection = self.connections.get(cid)
                if connection is None or connection.user_id == exclude_user:
                    continue
                targets[cid] = connection
        if not targets:
            return 0

        frame = {"event": event, "data": data}
        connections = list(targets.values())
        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for conn in connections],
            return_exceptions=True
        )

        failed = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        for conn in failed:
            await self.drop(conn.id, close_code=CLOSE_SEND_FAILED)
        return len(connections) - len(failed)

    async def send_to(self, connection_id: str, event: str, data: dict) -> bool:
        """Send one frame to a single connection (acks and errors)."""
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        return await self._safe_send(connection, {"event": event, "data": data})

    async def _safe_send(self, connection: Connection, frame: dict) -> bool:
        """Send a frame with error handling.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await connection.send(frame)
            return True
        except Exception as e:
            logger.debug(f"[Registry] Failed to send to connection {connection.id}: {e}")
            return False
