"""Tests for the delivery/read state machine."""
import pytest

from chatrelay.errors import Forbidden, NotFound


@pytest.fixture
def direct(services):
    return services.conversations.resolve_direct("alice", "bob")


class TestMarkSeen:
    @pytest.mark.asyncio
    async def test_recipient_marks_message_read(self, services, direct, connect):
        _, alice_ws = connect("alice")
        message = await services.pipeline.send("alice", "hi", conversation_id=direct.id)

        changed = await services.receipts.mark_seen(message.id, "bob")

        assert changed is True
        stored = services.store.get_message(message.id)
        assert stored.is_read_by("bob")
        assert stored.readBy[0].readAt is not None

        seen = alice_ws.events("message_seen")
        assert len(seen) == 1
        assert seen[0]["data"]["messageId"] == message.id
        assert seen[0]["data"]["conversationId"] == direct.id
        assert seen[0]["data"]["userId"] == "bob"

    @pytest.mark.asyncio
    async def test_repeated_mark_seen_is_noop(self, services, direct, connect):
        _, alice_ws = connect("alice")
        message = await services.pipeline.send("alice", "hi", conversation_id=direct.id)
        await services.receipts.mark_seen(message.id, "bob")
        first_read_at = services.store.get_message(message.id).readBy[0].readAt

        changed = await services.receipts.mark_seen(message.id, "bob")

        assert changed is False
        assert services.store.get_message(message.id).readBy[0].readAt == first_read_at
        assert len(alice_ws.events("message_seen")) == 1

    @pytest.mark.asyncio
    async def test_sender_mark_seen_is_noop(self, services, direct, connect):
        _, alice_ws = connect("alice")
        message = await services.pipeline.send("alice", "hi", conversation_id=direct.id)

        assert await services.receipts.mark_seen(message.id, "alice") is False
        assert alice_ws.events("message_seen") == []

    @pytest.mark.asyncio
    async def test_outsider_forbidden(self, services, direct):
        message = await services.pipeline.send("alice", "hi", conversation_id=direct.id)
        with pytest.raises(Forbidden):
            await services.receipts.mark_seen(message.id, "mallory")

    @pytest.mark.asyncio
    async def test_unknown_message(self, services):
        with pytest.raises(NotFound):
            await services.receipts.mark_seen("missing", "bob")


class TestMarkConversationRead:
    @pytest.mark.asyncio
    async def test_bulk_read_emits_one_event(self, services, direct, connect):
        _, alice_ws = connect("alice")
        sent = [
            await services.pipeline.send("alice", f"m{i}", conversation_id=direct.id)
            for i in range(3)
        ]
        await services.pipeline.send("bob", "mine", conversation_id=direct.id)

        message_ids = await services.receipts.mark_conversation_read(direct.id, "bob")

        assert message_ids == [m.id for m in sent]
        assert services.receipts.unread_count(direct.id, "bob") == 0
        events = alice_ws.events("messages_read")
        assert len(events) == 1
        assert events[0]["data"]["messageIds"] == message_ids
        assert events[0]["data"]["userId"] == "bob"
        assert alice_ws.events("message_read") == []

    @pytest.mark.asyncio
    async def test_nothing_unread_emits_nothing(self, services, direct, connect):
        _, alice_ws = connect("alice")

        assert await services.receipts.mark_conversation_read(direct.id, "bob") == []
        assert alice_ws.events("messages_read") == []

    @pytest.mark.asyncio
    async def test_read_state_never_reverts(self, services, direct):
        message = await services.pipeline.send("alice", "hi", conversation_id=direct.id)
        await services.receipts.mark_conversation_read(direct.id, "bob")

        assert await services.receipts.mark_seen(message.id, "bob") is False
        assert services.store.get_message(message.id).is_read_by("bob")

    @pytest.mark.asyncio
    async def test_group_markers_are_per_recipient(self, services):
        group = services.conversations.resolve_group("alice", ["bob", "carol"], name="Team")
        message = await services.pipeline.send("alice", "hi all", conversation_id=group.id)

        await services.receipts.mark_conversation_read(group.id, "bob")

        stored = services.store.get_message(message.id)
        assert stored.is_read_by("bob")
        assert not stored.is_read_by("carol")
        assert services.receipts.unread_count(group.id, "carol") == 1
