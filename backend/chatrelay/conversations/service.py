"""Conversation resolution: find-or-create direct conversations, groups, lookups
and group membership management."""
import logging
import time
from typing import List, Optional, Tuple

from chatrelay.errors import Conflict, Forbidden, InvalidRequest, NotFound
from chatrelay.storage.service import ChatStore, direct_key

from .schemas import Conversation, ConversationType, Participant, ParticipantRole

logger = logging.getLogger(__name__)


class ConversationResolver:
    """Resolves conversations against the store.

    Direct conversations are singletons per unordered participant pair. The
    store enforces that with a UNIQUE key; when two first contacts race, the
    loser's insert raises :class:`Conflict` and it falls back to the lookup.
    """

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    def resolve_direct(self, user_a: str, user_b: str) -> Conversation:
        """Get or create the direct conversation between two users.

        Raises:
            InvalidRequest: Both ids are the same user.
        """
        if user_a == user_b:
            raise InvalidRequest("Cannot create conversation with yourself")

        key = direct_key(user_a, user_b)
        existing = self._store.find_direct(key)
        if existing is not None:
            return existing

        conversation = Conversation(
            type=ConversationType.DIRECT,
            participants=[Participant(userId=user_a), Participant(userId=user_b)],
            createdBy=user_a,
        )
        try:
            self._store.insert_conversation(conversation, pair_key=key)
        except Conflict:
            logger.info(f"[Conversations] Lost creation race for {key}, reusing winner")
            winner = self._store.find_direct(key)
            if winner is None:
                raise
            return winner

        logger.info(f"[Conversations] Created direct conversation {conversation.id} for {key}")
        return self._store.get_conversation(conversation.id)

    def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        return self._store.find_direct(direct_key(user_a, user_b))

    def resolve_by_id(self, conversation_id: str) -> Conversation:
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None or not conversation.isActive:
            raise NotFound("Conversation not found")
        return conversation

    def require_participant(self, conversation_id: str, user_id: str) -> Conversation:
        """Fetch a conversation the user actively participates in.

        Raises:
            NotFound: Unknown conversation id.
            Forbidden: The user is not an active participant.
        """
        conversation = self.resolve_by_id(conversation_id)
        if not conversation.is_active_participant(user_id):
            raise Forbidden("Not a participant of this conversation")
        return conversation

    def resolve_group(
        self,
        creator_id: str,
        participant_ids: List[str],
        name: str,
        description: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Conversation:
        """Create a group conversation; the creator becomes its admin."""
        if not name or not name.strip():
            raise InvalidRequest("Group name is required")

        members = [pid for pid in dict.fromkeys(participant_ids) if pid != creator_id]
        if not members:
            raise InvalidRequest("Group conversations must have at least one participant")

        conversation = Conversation(
            type=ConversationType.GROUP,
            participants=[Participant(userId=creator_id, role=ParticipantRole.ADMIN)]
            + [Participant(userId=pid) for pid in members],
            name=name.strip(),
            description=description.strip() if description else None,
            avatar=avatar,
            createdBy=creator_id,
        )
        self._store.insert_conversation(conversation)
        logger.info(
            f"[Conversations] Created group {conversation.id} with {len(members) + 1} participants"
        )
        return self._store.get_conversation(conversation.id)

    # -----------------------------------------------------------------------
    # Group management
    # -----------------------------------------------------------------------

    def _require_admin(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.require_participant(conversation_id, user_id)
        if conversation.type != ConversationType.GROUP:
            raise InvalidRequest("Only group conversations can be managed")
        if not conversation.is_admin(user_id):
            raise Forbidden("Only group admins can do this")
        return conversation

    def update_group(self, conversation_id: str, admin_id: str, changes: dict) -> Conversation:
        """Change name, description and/or avatar of a group.

        Args:
            changes: Subset of ``name``, ``description``, ``avatar``; keys that
                are absent stay untouched.

        Raises:
            Forbidden: The caller is not an active admin.
            InvalidRequest: Not a group, or an empty name.
        """
        conversation = self._require_admin(conversation_id, admin_id)

        name = conversation.name
        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise InvalidRequest("Group name is required")
        description = conversation.description
        if "description" in changes:
            description = (changes["description"] or "").strip() or None
        avatar = changes["avatar"] if "avatar" in changes else conversation.avatar

        updated = self._store.update_details(conversation_id, name, description, avatar)
        logger.info(f"[Conversations] Group {conversation_id} updated by {admin_id}")
        return updated

    def add_participant(self, conversation_id: str, admin_id: str, user_id: str) -> Conversation:
        """Add a member to a group; a former member is reactivated.

        Raises:
            Conflict: The user is already an active participant.
        """
        conversation = self._require_admin(conversation_id, admin_id)
        if conversation.is_active_participant(user_id):
            raise Conflict("User is already a participant")

        self._store.add_participant(conversation_id, user_id, time.time())
        logger.info(f"[Conversations] {admin_id} added {user_id} to {conversation_id}")
        return self._store.get_conversation(conversation_id)

    def remove_participant(self, conversation_id: str, admin_id: str, user_id: str) -> Conversation:
        """Deactivate a member of a group.

        The member's history stays; they stop receiving messages, unread
        markers and conversation room access.

        Raises:
            NotFound: ``user_id`` is not an active participant.
        """
        self._require_admin(conversation_id, admin_id)
        if not self._store.deactivate_participant(conversation_id, user_id):
            raise NotFound("Participant not found")

        logger.info(f"[Conversations] {admin_id} removed {user_id} from {conversation_id}")
        return self._store.get_conversation(conversation_id)

    def leave(self, conversation_id: str, user_id: str) -> Conversation:
        """Leave a group. The group becomes inactive once nobody is left.

        Raises:
            InvalidRequest: Direct conversations cannot be left.
        """
        conversation = self.require_participant(conversation_id, user_id)
        if conversation.type != ConversationType.GROUP:
            raise InvalidRequest("Direct conversations cannot be left")

        self._store.deactivate_participant(conversation_id, user_id)
        logger.info(f"[Conversations] {user_id} left {conversation_id}")
        return self._store.get_conversation(conversation_id)

    def list_for_user(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> Tuple[List[Tuple[Conversation, int]], int]:
        """Page of a user's conversations with their unread counts.

        Returns:
            Tuple of ([(conversation, unread_count), ...], total_count).
        """
        offset = (page - 1) * limit
        conversations = self._store.list_conversations_for_user(user_id, limit, offset)
        total = self._store.count_conversations_for_user(user_id)
        return (
            [(c, self._store.unread_count(c.id, user_id)) for c in conversations],
            total,
        )
