"""Tests for client frame parsing (tagged event variants)."""
import pytest

from chatrelay.errors import InvalidRequest
from chatrelay.realtime.protocol import (
    JoinRoom,
    MessageSeen,
    Ping,
    SendMessage,
    StartTyping,
    parse_client_event,
)


class TestParseClientEvent:
    def test_join_room(self):
        event = parse_client_event({"event": "join_room", "data": {"room": "user:a"}, "ref": "r1"})

        assert isinstance(event, JoinRoom)
        assert event.data.room == "user:a"
        assert event.ref == "r1"

    def test_numeric_ref_kept_as_integer(self):
        event = parse_client_event({"event": "ping", "ref": 42})

        assert isinstance(event, Ping)
        assert event.ref == 42

    def test_join_room_bare_string(self):
        event = parse_client_event({"event": "join_room", "data": "conversation:c1"})
        assert isinstance(event, JoinRoom)
        assert event.data.room == "conversation:c1"

    def test_send_message(self):
        event = parse_client_event({
            "event": "send_message",
            "data": {"recipientId": "bob", "content": "hi"},
        })

        assert isinstance(event, SendMessage)
        assert event.data.recipientId == "bob"
        assert event.data.messageType.value == "text"

    def test_send_message_needs_exactly_one_target(self):
        with pytest.raises(InvalidRequest):
            parse_client_event({
                "event": "send_message",
                "data": {"recipientId": "bob", "conversationId": "c1", "content": "hi"},
            })

    def test_send_message_text_needs_content(self):
        with pytest.raises(InvalidRequest):
            parse_client_event({"event": "send_message", "data": {"recipientId": "bob"}})

    def test_media_message_needs_payload(self):
        with pytest.raises(InvalidRequest):
            parse_client_event({
                "event": "send_message",
                "data": {"recipientId": "bob", "messageType": "image"},
            })

    def test_typing(self):
        event = parse_client_event({"event": "start_typing", "data": {"conversationId": "c1"}})
        assert isinstance(event, StartTyping)

    def test_message_seen_ignores_client_user_id(self):
        event = parse_client_event({
            "event": "message_seen",
            "data": {"messageId": "m1", "userId": "someone-else"},
        })
        assert isinstance(event, MessageSeen)
        assert event.data.messageId == "m1"

    def test_ping_without_data(self):
        assert isinstance(parse_client_event({"event": "ping"}), Ping)

    def test_unknown_event(self):
        with pytest.raises(InvalidRequest):
            parse_client_event({"event": "drop_tables", "data": {}})

    def test_missing_payload_field(self):
        with pytest.raises(InvalidRequest):
            parse_client_event({"event": "join_room", "data": {}})

    def test_non_object_frame(self):
        with pytest.raises(InvalidRequest, match="JSON object"):
            parse_client_event(["join_room"])
