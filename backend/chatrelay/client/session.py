"""Async WebSocket client session for the chatrelay gateway.

A :class:`ClientSession` owns one socket. It keeps an inbox of received
frames, dispatches them to registered handlers and tracks optimistic sends
in an outbox.

Outbox lifecycle:
    send_message()  → entry is ``pending`` (carries a fresh ``ref``)
    ack {ref}       → ``confirmed``, with the server message id
    error {ref}     → ``failed``, with the error code and text
    socket closed   → every still pending entry becomes ``failed``

Settled entries leave the outbox; the caller keeps the entry object. The inbox
keeps only the most recent ``inbox_size`` frames, so frames nobody waits for
(handler-only traffic) are eventually discarded.

Usage:
    session = ClientSession("ws://localhost:8000", token)
    await session.connect()
    await session.join(f"conversation:{conversation_id}")
    entry = await session.send_message(conversation_id=conversation_id, content="hi")
    await session.settled(entry)
    await session.close()
"""
import asyncio
import inspect
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]

DEFAULT_INBOX_SIZE = 1000


class SessionError(Exception):
    """The server answered a request with an ``error`` frame."""

    def __init__(self, code: Optional[str], error: Optional[str]) -> None:
        super().__init__(f"{code}: {error}")
        self.code = code
        self.error = error


class OutboxState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class OutboxEntry:
    """One optimistic send awaiting the server's verdict.

    Attributes:
        ref: Client correlation id sent with the frame.
        request: The ``send_message`` payload as sent.
        state: pending, confirmed or failed.
        message: Server message record once confirmed.
        error: ``{code, error}`` once failed.
    """
    ref: str
    request: dict
    state: OutboxState = OutboxState.PENDING
    message: Optional[dict] = None
    error: Optional[dict] = None
    created_at: float = field(default_factory=time.time)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def message_id(self) -> Optional[str]:
        return self.message["id"] if self.message else None

    def confirm(self, message: dict) -> None:
        self.state = OutboxState.CONFIRMED
        self.message = message
        self._done.set()

    def fail(self, error: dict) -> None:
        self.state = OutboxState.FAILED
        self.error = error
        self._done.set()


class ClientSession:
    """One authenticated socket to the gateway."""

    def __init__(self, base_url: str, token: str, inbox_size: int = DEFAULT_INBOX_SIZE) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.user_id: Optional[str] = None
        self.connection_id: Optional[str] = None
        self.rooms: List[str] = []
        # ref -> entry, pending entries only
        self.outbox: Dict[str, OutboxEntry] = {}

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[Handler]] = {}
        self._inbox: Deque[dict] = deque(maxlen=inbox_size)
        self._arrived = asyncio.Condition()
        self._closed = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, timeout: float = 5.0) -> dict:
        """Open the socket and wait for the ``connected`` frame."""
        url = f"{self.base_url}/ws?token={self.token}"
        self._ws = await websockets.connect(url)
        self._reader = asyncio.create_task(self._read_loop())
        frame = await self.wait_for("connected", timeout=timeout)
        self.user_id = frame["userId"]
        self.connection_id = frame["connectionId"]
        self.rooms = list(frame.get("rooms", []))
        logger.info(f"[Client] Connected as {self.user_id} ({self.connection_id})")
        return frame

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None
        self._fail_pending("Connection closed")

    async def __aenter__(self) -> "ClientSession":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: str, handler: Handler) -> None:
        """Register a handler (plain function or coroutine) for an event."""
        self._handlers.setdefault(event, []).append(handler)

    async def wait_for(
        self,
        event: str,
        predicate: Optional[Callable[[dict], bool]] = None,
        timeout: float = 5.0,
    ) -> dict:
        """Remove and return the data of the first matching received frame.

        Raises:
            asyncio.TimeoutError: Nothing matched within ``timeout`` seconds.
        """
        frame = await self._take_frame(
            lambda f: f.get("event") == event and (predicate is None or predicate(f["data"])),
            timeout,
        )
        return frame["data"]

    async def _take_frame(self, match: Callable[[dict], bool], timeout: float) -> dict:
        def _take() -> Optional[dict]:
            for index, frame in enumerate(self._inbox):
                if match(frame):
                    del self._inbox[index]
                    return frame
            return None

        async def _wait() -> dict:
            async with self._arrived:
                while True:
                    frame = _take()
                    if frame is not None:
                        return frame
                    if self._closed:
                        raise ConnectionError("Socket closed while waiting for a frame")
                    await self._arrived.wait()

        return await asyncio.wait_for(_wait(), timeout)

    async def _request(self, event: str, data: dict, reply: str, timeout: float) -> dict:
        """Send a frame with a fresh ``ref`` and wait for the ``reply`` or
        ``error`` frame carrying the same ``ref``.

        Raises:
            SessionError: The server answered with an ``error`` frame.
        """
        ref = uuid.uuid4().hex
        await self._send(event, data, ref=ref)
        frame = await self._take_frame(
            lambda f: f.get("event") in (reply, "error") and f["data"].get("ref") == ref,
            timeout,
        )
        if frame["event"] == "error":
            raise SessionError(frame["data"].get("code"), frame["data"].get("error"))
        return frame["data"]

    async def _send(self, event: str, data: Optional[dict] = None, ref: Optional[str] = None) -> None:
        frame: Dict[str, Any] = {"event": event, "data": data or {}}
        if ref is not None:
            frame["ref"] = ref
        await self._ws.send(json.dumps(frame))

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    frame = None
                if not isinstance(frame, dict):
                    logger.warning(f"[Client] Ignoring malformed frame: {raw!r}")
                    continue
                frame.setdefault("data", {})
                self._reconcile(frame)
                async with self._arrived:
                    self._inbox.append(frame)
                    self._arrived.notify_all()
                await self._dispatch(frame)
        except ConnectionClosed as e:
            logger.info(f"[Client] Socket closed: {e}")
        finally:
            self._closed = True
            self._fail_pending("Connection closed")
            async with self._arrived:
                self._arrived.notify_all()

    async def _dispatch(self, frame: dict) -> None:
        for handler in self._handlers.get(frame.get("event"), []):
            try:
                result = handler(frame.get("data") or {})
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[Client] Handler for {frame.get('event')} failed: {e}")

    # =========================================================================
    # Outbox
    # =========================================================================

    def _reconcile(self, frame: dict) -> None:
        event = frame.get("event")
        data = frame.get("data") or {}
        ref = data.get("ref")
        entry = self.outbox.get(ref) if isinstance(ref, str) else None
        if entry is None:
            return
        if event == "ack" and "messageData" in data:
            entry.confirm(data["messageData"])
        elif event == "error":
            entry.fail({"code": data.get("code"), "error": data.get("error")})
        else:
            return
        del self.outbox[ref]

    def _fail_pending(self, reason: str) -> None:
        for entry in self.outbox.values():
            entry.fail({"code": "disconnected", "error": reason})
        self.outbox.clear()

    def pending(self) -> List[OutboxEntry]:
        return list(self.outbox.values())

    def is_own_echo(self, message: dict) -> bool:
        """True when a received message was sent by this session's user.

        The fan-out reaches the sender too, and the echo can arrive before
        the ``ack``, so it is matched on the sender rather than the outbox.
        """
        return self.user_id is not None and message.get("senderId") == self.user_id

    async def settled(self, entry: OutboxEntry, timeout: float = 5.0) -> OutboxEntry:
        """Wait until an entry is confirmed or failed."""
        await asyncio.wait_for(entry._done.wait(), timeout)
        return entry

    # =========================================================================
    # Commands
    # =========================================================================

    async def join(self, room: str, timeout: float = 5.0) -> dict:
        """Join a room and wait for ``room_joined``.

        Raises:
            SessionError: The room was refused (``forbidden``, ``not_found``...).
        """
        joined = await self._request("join_room", {"room": room}, "room_joined", timeout)
        self.rooms.append(room)
        return joined

    async def leave(self, room: str, timeout: float = 5.0) -> dict:
        left = await self._request("leave_room", {"room": room}, "room_left", timeout)
        if room in self.rooms:
            self.rooms.remove(room)
        return left

    async def send_message(
        self,
        conversation_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        content: str = "",
        message_type: str = "text",
        reply_to: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> OutboxEntry:
        """Send a message optimistically. Returns the ``pending`` outbox entry."""
        request: Dict[str, Any] = {"content": content, "messageType": message_type}
        if conversation_id:
            request["conversationId"] = conversation_id
        if recipient_id:
            request["recipientId"] = recipient_id
        if reply_to:
            request["replyTo"] = reply_to
        if payload is not None:
            request["payload"] = payload

        entry = OutboxEntry(ref=uuid.uuid4().hex, request=request)
        self.outbox[entry.ref] = entry
        try:
            await self._send("send_message", request, ref=entry.ref)
        except ConnectionClosed:
            self.outbox.pop(entry.ref, None)
            entry.fail({"code": "disconnected", "error": "Connection closed"})
        return entry

    async def start_typing(self, conversation_id: str) -> None:
        await self._send("start_typing", {"conversationId": conversation_id})

    async def stop_typing(self, conversation_id: str) -> None:
        await self._send("stop_typing", {"conversationId": conversation_id})

    async def mark_seen(self, message_id: str) -> None:
        await self._send("message_seen", {"messageId": message_id}, ref=uuid.uuid4().hex)

    async def ping(self, timeout: float = 5.0) -> dict:
        await self._send("ping")
        return await self.wait_for("pong", timeout=timeout)
