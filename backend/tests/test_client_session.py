"""Tests for the client session outbox and request helpers."""
import asyncio
import json

import pytest

from chatrelay.client import session as session_module
from chatrelay.client.session import ClientSession, OutboxState, SessionError


class ScriptedSocket:
    """Fake server socket answering client frames through a responder."""

    def __init__(self, responder):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.responder = responder
        self.push({"event": "connected", "data": {
            "userId": "alice", "connectionId": "conn-1", "rooms": ["user:alice"],
        }})

    def push(self, frame):
        self.incoming.put_nowait(json.dumps(frame))

    async def send(self, raw):
        frame = json.loads(raw)
        self.sent.append(frame)
        for reply in self.responder(frame):
            self.push(reply)

    async def close(self):
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


def server(frame):
    """Minimal gateway behaviour for the frames the tests send."""
    event, data, ref = frame["event"], frame["data"], frame.get("ref")
    if event == "join_room":
        if data["room"].startswith("user:") and data["room"] != "user:alice":
            return [{"event": "error", "data": {
                "code": "forbidden", "error": "Cannot join another user's room", "ref": ref,
            }}]
        return [{"event": "room_joined", "data": {"room": data["room"], "ref": ref}}]
    if event == "send_message":
        if data["content"] == "fail":
            return [{"event": "error", "data": {
                "code": "invalid_reference", "error": "bad reply", "ref": ref,
            }}]
        message = {"id": f"m-{ref}", "senderId": "alice", **data}
        return [
            {"event": "receive_message", "data": message},
            {"event": "ack", "data": {"ref": ref, "messageData": message}},
        ]
    if event == "ping":
        return [{"event": "pong", "data": {}}]
    return []


@pytest.fixture
def socket(monkeypatch):
    scripted = ScriptedSocket(server)

    async def fake_connect(url):
        scripted.url = url
        return scripted

    monkeypatch.setattr(session_module.websockets, "connect", fake_connect)
    return scripted


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_reads_greeting(self, socket):
        session = ClientSession("ws://chat.example.com/", "tok")

        greeting = await session.connect()

        assert socket.url == "ws://chat.example.com/ws?token=tok"
        assert greeting["connectionId"] == "conn-1"
        assert session.user_id == "alice"
        assert session.rooms == ["user:alice"]
        await session.close()

    @pytest.mark.asyncio
    async def test_ping(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            assert await session.ping() == {}


class TestOutbox:
    @pytest.mark.asyncio
    async def test_ack_confirms_entry(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            entry = await session.send_message(conversation_id="c1", content="hello")
            assert socket.sent[-1]["ref"] == entry.ref

            await session.settled(entry)

            assert entry.state == OutboxState.CONFIRMED
            assert entry.message_id == f"m-{entry.ref}"
            assert session.pending() == []
            assert session.outbox == {}

            echo = await session.wait_for("receive_message")
            assert session.is_own_echo(echo)

    @pytest.mark.asyncio
    async def test_error_fails_entry(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            entry = await session.send_message(conversation_id="c1", content="fail")

            await session.settled(entry)

            assert entry.state == OutboxState.FAILED
            assert entry.error == {"code": "invalid_reference", "error": "bad reply"}

    @pytest.mark.asyncio
    async def test_pending_entries_fail_on_close(self, monkeypatch):
        silent = ScriptedSocket(lambda frame: [])

        async def fake_connect(url):
            return silent

        monkeypatch.setattr(session_module.websockets, "connect", fake_connect)
        session = ClientSession("ws://chat.example.com", "tok")
        await session.connect()
        entry = await session.send_message(recipient_id="bob", content="into the void")
        assert entry.state == OutboxState.PENDING

        await session.close()

        assert entry.state == OutboxState.FAILED
        assert entry.error["code"] == "disconnected"

    @pytest.mark.asyncio
    async def test_request_body_uses_wire_names(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            await session.send_message(
                recipient_id="bob", content="pic", message_type="image",
                payload={"url": "https://cdn.example.com/p.png"}, reply_to="m0",
            )

        assert socket.sent[-1]["data"] == {
            "content": "pic",
            "messageType": "image",
            "recipientId": "bob",
            "replyTo": "m0",
            "payload": {"url": "https://cdn.example.com/p.png"},
        }


class TestRooms:
    @pytest.mark.asyncio
    async def test_join(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            joined = await session.join("conversation:c1")
            assert joined == {"room": "conversation:c1", "ref": socket.sent[-1]["ref"]}
            assert "conversation:c1" in session.rooms

    @pytest.mark.asyncio
    async def test_refused_join_raises(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            with pytest.raises(SessionError) as exc_info:
                await session.join("user:bob")

        assert exc_info.value.code == "forbidden"

    @pytest.mark.asyncio
    async def test_handlers_receive_event_data(self, socket):
        seen = []
        async with ClientSession("ws://chat.example.com", "tok") as session:
            session.on("receive_message", seen.append)
            entry = await session.send_message(conversation_id="c1", content="hello")
            await session.settled(entry)

        assert [m["content"] for m in seen] == ["hello"]

    @pytest.mark.asyncio
    async def test_concurrent_joins_match_their_own_reply(self, monkeypatch):
        held = []

        def answer_in_reverse(frame):
            if frame["event"] != "join_room":
                return []
            held.append(frame)
            if len(held) < 2:
                return []
            return [
                {"event": "room_joined", "data": {"room": f["data"]["room"], "ref": f["ref"]}}
                for f in reversed(held)
            ]

        scripted = ScriptedSocket(answer_in_reverse)

        async def fake_connect(url):
            return scripted

        monkeypatch.setattr(session_module.websockets, "connect", fake_connect)
        async with ClientSession("ws://chat.example.com", "tok") as session:
            first, second = await asyncio.gather(
                session.join("conversation:a"), session.join("conversation:b")
            )

        assert first["room"] == "conversation:a"
        assert second["room"] == "conversation:b"


class TestBuffers:
    @pytest.mark.asyncio
    async def test_inbox_is_bounded_for_handler_only_traffic(self, socket):
        handled = []
        session = ClientSession("ws://chat.example.com", "tok", inbox_size=10)
        session.on("receive_message", handled.append)
        await session.connect()

        for index in range(50):
            socket.push({"event": "receive_message", "data": {"id": f"m{index}"}})
        await session.ping()

        assert len(handled) == 50
        assert len(session._inbox) <= 10
        await session.close()

    @pytest.mark.asyncio
    async def test_settled_entries_leave_outbox(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            confirmed = await session.send_message(conversation_id="c1", content="ok")
            failed = await session.send_message(conversation_id="c1", content="fail")
            await session.settled(confirmed)
            await session.settled(failed)

            assert session.outbox == {}
            assert confirmed.state == OutboxState.CONFIRMED
            assert failed.state == OutboxState.FAILED

    @pytest.mark.asyncio
    async def test_own_echo_recognised_by_sender(self, socket):
        async with ClientSession("ws://chat.example.com", "tok") as session:
            assert session.is_own_echo({"id": "m1", "senderId": "alice"})
            assert not session.is_own_echo({"id": "m2", "senderId": "bob"})
