"""Pydantic schemas for conversations."""
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ConversationType(str, Enum):
    """Kind of conversation.

    Attributes:
        DIRECT: Exactly two participants, unique per unordered pair.
        GROUP: Named conversation with any number of participants.
    """
    DIRECT = "direct"
    GROUP = "group"


class ParticipantRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class Participant(BaseModel):
    """A user's membership in a conversation."""
    userId: str
    role: ParticipantRole = ParticipantRole.MEMBER
    isActive: bool = True
    joinedAt: float = Field(default_factory=time.time)


class Conversation(BaseModel):
    """Durable conversation record.

    Attributes:
        id: Unique conversation identifier.
        type: direct or group.
        participants: Members in join order.
        name: Display name (group only).
        description: Optional group description.
        avatar: Optional group avatar URL.
        createdBy: User who created the conversation.
        createdAt: Unix timestamp of creation.
        lastMessageId: Denormalized pointer to the latest message.
        lastMessageAt: Timestamp of the latest message.
        isActive: False once every participant has left.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: ConversationType
    participants: List[Participant] = Field(default_factory=list)
    name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    createdBy: str
    createdAt: float = Field(default_factory=time.time)
    lastMessageId: Optional[str] = None
    lastMessageAt: Optional[float] = None
    isActive: bool = True

    @property
    def room(self) -> str:
        return f"conversation:{self.id}"

    def active_participant_ids(self) -> List[str]:
        return [p.userId for p in self.participants if p.isActive]

    def is_active_participant(self, user_id: str) -> bool:
        return user_id in self.active_participant_ids()

    def is_admin(self, user_id: str) -> bool:
        return any(
            p.userId == user_id and p.isActive and p.role == ParticipantRole.ADMIN
            for p in self.participants
        )


class CreateConversationRequest(BaseModel):
    """Request body for ``POST /conversations``.

    ``participants`` lists the *other* users; the caller is always added.
    """
    type: ConversationType
    participants: List[str] = Field(default_factory=list)
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "CreateConversationRequest":
        if self.type == ConversationType.DIRECT and len(self.participants) != 1:
            raise ValueError(
                "Direct conversations must have exactly one other participant"
            )
        if self.type == ConversationType.GROUP:
            if not self.participants:
                raise ValueError("Group conversations must have at least one participant")
            if not self.name or not self.name.strip():
                raise ValueError("Group name is required")
        return self


class UpdateConversationRequest(BaseModel):
    """Request body for ``PUT /conversations/{id}``.

    Only the fields present in the body are changed; an explicit ``null``
    clears ``description`` or ``avatar``.
    """
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = None


class AddParticipantRequest(BaseModel):
    userId: str = Field(..., min_length=1)
