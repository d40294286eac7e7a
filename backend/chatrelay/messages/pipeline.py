"""Message pipeline: validate, persist, then fan out a new message.

Durability always precedes fan-out. A fan-out gap never means the message
was lost; recipients recover it by refetching the conversation history.
"""
import logging
from typing import List, Optional, Tuple

from chatrelay.config import MessagingSettings
from chatrelay.conversations.schemas import Conversation
from chatrelay.conversations.service import ConversationResolver
from chatrelay.errors import Forbidden, InvalidReference, InvalidRequest
from chatrelay.realtime.manager import RoomRegistry, user_room
from chatrelay.realtime.protocol import ServerEvent
from chatrelay.storage.service import ChatStore

from .schemas import Message, MessageType

logger = logging.getLogger(__name__)


def conversation_rooms(conversation: Conversation) -> List[str]:
    """The conversation room plus every active participant's personal room.

    Fanning out to this union reaches participants that have not joined the
    conversation room, while a connection in several of the rooms still gets
    each event once.
    """
    return [conversation.room] + [
        user_room(user_id) for user_id in conversation.active_participant_ids()
    ]


class MessagePipeline:
    """Creates messages in a conversation and pushes them to its members."""

    def __init__(
        self,
        store: ChatStore,
        conversations: ConversationResolver,
        registry: RoomRegistry,
        settings: MessagingSettings,
    ) -> None:
        self._store = store
        self._conversations = conversations
        self._registry = registry
        self._settings = settings

    async def send(
        self,
        sender_id: str,
        content: str = "",
        message_type: MessageType = MessageType.TEXT,
        conversation_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        reply_to: Optional[str] = None,
        payload: Optional[dict] = None,
        forwarded_from: Optional[str] = None,
    ) -> Message:
        """Send a message to a conversation, or to a user's direct conversation.

        Args:
            sender_id: Verified identity of the sender.
            content: Text content (caption for non-text types).
            message_type: Content type.
            conversation_id: Target conversation. Mutually exclusive with
                ``recipient_id``.
            recipient_id: Target user; the direct conversation is resolved
                (and created on first contact).
            reply_to: Id of a message in the same conversation.
            payload: Structured media/shared-content data.
            forwarded_from: Original sender when forwarding.

        Returns:
            The durable message record.

        Raises:
            NotFound: Unknown conversation.
            Forbidden: Sender is not an active participant.
            InvalidReference: ``reply_to`` is outside the conversation.
            InvalidRequest: Content too long or no target given.
        """
        if len(content) > self._settings.max_content_length:
            raise InvalidRequest(
                f"Message content exceeds {self._settings.max_content_length} characters"
            )

        # 1. Resolve the target conversation
        if recipient_id:
            conversation = self._conversations.resolve_direct(sender_id, recipient_id)
            if not conversation.is_active_participant(sender_id):
                raise Forbidden("Not a participant of this conversation")
        elif conversation_id:
            conversation = self._conversations.require_participant(conversation_id, sender_id)
        else:
            raise InvalidRequest("Provide exactly one of conversationId or recipientId")

        # 2. Validate the reply reference
        if reply_to:
            parent = self._store.get_message(reply_to)
            if parent is None or parent.conversationId != conversation.id:
                raise InvalidReference("replyTo must reference a message in the same conversation")

        # 3 + 4. Persist with unread markers and move the latest-message pointer
        recipients = [uid for uid in conversation.active_participant_ids() if uid != sender_id]
        message = self._store.append_message(
            Message(
                conversationId=conversation.id,
                senderId=sender_id,
                content=content,
                messageType=message_type,
                payload=payload,
                replyTo=reply_to,
                forwarded=forwarded_from is not None,
                forwardedFrom=forwarded_from,
            ),
            recipients,
        )
        logger.info(
            f"[Pipeline] Stored message {message.id} in {conversation.id} "
            f"from {sender_id} to {len(recipients)} recipients"
        )

        # 5. Fan out
        delivered = await self._registry.fan_out(
            conversation_rooms(conversation),
            ServerEvent.RECEIVE_MESSAGE.value,
            message.model_dump(mode="json"),
        )
        await self._registry.fan_out(
            [user_room(uid) for uid in conversation.active_participant_ids()],
            ServerEvent.CONVERSATION_UPDATED.value,
            {
                "conversationId": conversation.id,
                "lastMessageId": message.id,
                "lastMessageAt": message.createdAt,
            },
        )
        logger.debug(f"[Pipeline] Message {message.id} delivered to {delivered} connections")
        return message

    def history(
        self,
        conversation_id: str,
        user_id: str,
        limit: Optional[int] = None,
        before: Optional[str] = None,
    ) -> Tuple[List[Message], bool]:
        """Page of a conversation's history for a participant, oldest first.

        Args:
            before: Message id cursor; returns messages strictly older than it.

        Returns:
            Tuple of (messages, has_more) where ``has_more`` tells whether
            older messages exist before the page.
        """
        self._conversations.require_participant(conversation_id, user_id)
        limit = min(limit or self._settings.default_page_size, self._settings.max_page_size)

        cursor = None
        if before:
            cursor = self._store.get_message(before)
            if cursor is None or cursor.conversationId != conversation_id:
                raise InvalidReference("before must reference a message in this conversation")

        messages = self._store.list_messages(conversation_id, limit + 1, before=cursor)
        if len(messages) > limit:
            return messages[1:], True
        return messages, False
