"""Reactions, owner-only edit/delete, and forwarding."""
import logging
import time
from typing import Tuple

from chatrelay.config import MessagingSettings
from chatrelay.conversations.schemas import Conversation
from chatrelay.conversations.service import ConversationResolver
from chatrelay.errors import Forbidden, InvalidRequest, NotFound
from chatrelay.realtime.manager import RoomRegistry
from chatrelay.realtime.protocol import ServerEvent
from chatrelay.storage.service import ChatStore

from .pipeline import MessagePipeline, conversation_rooms
from .schemas import Message, MessageType

logger = logging.getLogger(__name__)


class MessageMutators:
    """Mutations of already-persisted messages.

    Each mutation is committed to the store first and then announced to the
    conversation room and the participants' personal rooms.
    """

    def __init__(
        self,
        store: ChatStore,
        conversations: ConversationResolver,
        registry: RoomRegistry,
        pipeline: MessagePipeline,
        settings: MessagingSettings,
    ) -> None:
        self._store = store
        self._conversations = conversations
        self._registry = registry
        self._pipeline = pipeline
        self._settings = settings

    def _load(self, message_id: str, user_id: str) -> Tuple[Message, Conversation]:
        message = self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        conversation = self._conversations.require_participant(message.conversationId, user_id)
        return message, conversation

    # =========================================================================
    # Reactions
    # =========================================================================

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Set the user's reaction on a message, replacing any previous one."""
        emoji = emoji.strip()
        if not emoji or len(emoji) > self._settings.max_emoji_length:
            raise InvalidRequest("Invalid emoji")

        message, conversation = self._load(message_id, user_id)
        if message.isDeleted:
            raise InvalidRequest("Cannot react to a deleted message")

        self._store.upsert_reaction(message_id, user_id, emoji, time.time())
        message = self._store.get_message(message_id)
        reaction = next(r for r in message.reactions if r.userId == user_id)

        await self._registry.fan_out(
            conversation_rooms(conversation),
            ServerEvent.REACTION_ADDED.value,
            {
                "messageId": message_id,
                "reaction": reaction.model_dump(mode="json"),
                "reactions": [r.model_dump(mode="json") for r in message.reactions],
            },
        )
        return message

    async def remove_reaction(self, message_id: str, user_id: str) -> Message:
        """Remove the user's reaction. A no-op, without event, when absent."""
        message, conversation = self._load(message_id, user_id)
        if not self._store.delete_reaction(message_id, user_id):
            return message

        await self._registry.fan_out(
            conversation_rooms(conversation),
            ServerEvent.REACTION_REMOVED.value,
            {"messageId": message_id, "userId": user_id},
        )
        return self._store.get_message(message_id)

    # =========================================================================
    # Edit / delete
    # =========================================================================

    async def edit_message(self, message_id: str, requester_id: str, content: str) -> Message:
        """Replace the content of one's own, not deleted, text message.

        Raises:
            NotFound: Unknown message.
            Forbidden: Requester is not the sender, or the message is deleted.
            InvalidRequest: Empty/too long content, or a non-text message.
        """
        message = self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        if message.senderId != requester_id:
            raise Forbidden("You can only edit your own messages")
        if message.isDeleted:
            raise Forbidden("Deleted messages cannot be edited")
        if message.messageType != MessageType.TEXT:
            raise InvalidRequest("Only text messages can be edited")

        content = content.strip()
        if not content:
            raise InvalidRequest("content is required")
        if len(content) > self._settings.max_content_length:
            raise InvalidRequest(
                f"Message content exceeds {self._settings.max_content_length} characters"
            )

        conversation = self._conversations.require_participant(message.conversationId, requester_id)
        updated = self._store.update_content(message_id, content, time.time())
        logger.info(f"[Mutations] Message {message_id} edited by {requester_id}")

        await self._registry.fan_out(
            conversation_rooms(conversation),
            ServerEvent.MESSAGE_EDITED.value,
            {"messageId": message_id, "messageData": updated.model_dump(mode="json")},
        )
        return updated

    async def delete_message(self, message_id: str, requester_id: str) -> Message:
        """Soft-delete one's own message; content becomes the tombstone.

        Deleting an already deleted message returns it unchanged.
        """
        message = self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        if message.senderId != requester_id:
            raise Forbidden("You can only delete your own messages")
        if message.isDeleted:
            return message

        conversation = self._conversations.resolve_by_id(message.conversationId)
        deleted = self._store.soft_delete(message_id, self._settings.tombstone_text, time.time())
        logger.info(f"[Mutations] Message {message_id} deleted by {requester_id}")

        await self._registry.fan_out(
            conversation_rooms(conversation),
            ServerEvent.MESSAGE_DELETED.value,
            {"messageId": message_id, "conversationId": conversation.id},
        )
        return deleted

    # =========================================================================
    # Forward
    # =========================================================================

    async def forward_message(self, message_id: str, requester_id: str, recipient_id: str) -> Message:
        """Send a copy of a message to the requester's direct conversation with
        ``recipient_id``, through the regular pipeline."""
        source, _ = self._load(message_id, requester_id)
        if source.isDeleted:
            raise InvalidRequest("Deleted messages cannot be forwarded")

        return await self._pipeline.send(
            sender_id=requester_id,
            content=source.content,
            message_type=source.messageType,
            recipient_id=recipient_id,
            payload=source.payload,
            forwarded_from=source.senderId,
        )
