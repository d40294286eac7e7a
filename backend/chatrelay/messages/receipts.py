"""Delivery/read state machine.

Per (message, recipient) the only states are ``unread`` and ``read``; the
transition is one-way. A recipient fetching or receiving a message counts as
delivered, so no separate delivered state is tracked.

Events:
    - ``message_seen``: one message transitioned (``mark_seen``).
    - ``messages_read``: the canonical bulk shape, one event per
      ``mark_conversation_read`` call carrying every transitioned id.
"""
import logging
import time
from typing import List

from chatrelay.conversations.service import ConversationResolver
from chatrelay.errors import NotFound
from chatrelay.realtime.manager import RoomRegistry, user_room
from chatrelay.realtime.protocol import ServerEvent
from chatrelay.storage.service import ChatStore

logger = logging.getLogger(__name__)


class ReadStateMachine:
    """Moves read markers forward and announces the transitions."""

    def __init__(
        self,
        store: ChatStore,
        conversations: ConversationResolver,
        registry: RoomRegistry,
    ) -> None:
        self._store = store
        self._conversations = conversations
        self._registry = registry

    async def mark_seen(self, message_id: str, user_id: str) -> bool:
        """Mark one message as read by ``user_id``.

        Calling it as the sender, or for a message already read, is a no-op
        so that retries stay harmless.

        Returns:
            True if the marker transitioned, False for a no-op.

        Raises:
            NotFound: Unknown message.
            Forbidden: The user is not a participant of the conversation.
        """
        message = self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        conversation = self._conversations.require_participant(message.conversationId, user_id)

        if user_id not in message.recipients() or message.is_read_by(user_id):
            return False

        read_at = time.time()
        if not self._store.mark_read(message_id, user_id, read_at):
            return False

        logger.info(f"[Receipts] Message {message_id} seen by {user_id}")
        await self._registry.fan_out(
            [conversation.room, user_room(message.senderId)],
            ServerEvent.MESSAGE_SEEN.value,
            {
                "messageId": message_id,
                "conversationId": conversation.id,
                "userId": user_id,
                "readAt": read_at,
            },
        )
        return True

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> List[str]:
        """Mark every unread message addressed to ``user_id`` as read.

        Returns:
            Ids of the messages that transitioned, in creation order. Empty
            when nothing was unread, in which case no event is sent.
        """
        conversation = self._conversations.require_participant(conversation_id, user_id)

        read_at = time.time()
        message_ids = self._store.mark_conversation_read(conversation_id, user_id, read_at)
        if not message_ids:
            return []

        senders = self._store.senders_of(message_ids)
        logger.info(
            f"[Receipts] {len(message_ids)} messages in {conversation_id} read by {user_id}"
        )
        await self._registry.fan_out(
            [conversation.room] + [user_room(sender) for sender in senders],
            ServerEvent.MESSAGES_READ.value,
            {
                "conversationId": conversation_id,
                "messageIds": message_ids,
                "userId": user_id,
                "readAt": read_at,
            },
        )
        return message_ids

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        self._conversations.require_participant(conversation_id, user_id)
        return self._store.unread_count(conversation_id, user_id)
