"""Pydantic schemas for messages, reactions and read markers."""
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class MessageType(str, Enum):
    """Type of message content.

    ``text`` carries its content in ``content``; every other type carries a
    structured ``payload`` (media reference or shared post/reel) and may use
    ``content`` as a caption.
    """
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    SHARED_POST = "shared_post"
    SHARED_REEL = "shared_reel"


class Reaction(BaseModel):
    userId: str
    emoji: str
    reactedAt: float = Field(default_factory=time.time)


class ReadMarker(BaseModel):
    """Per-recipient read state. Once ``isRead`` is true it never reverts."""
    userId: str
    isRead: bool = False
    readAt: Optional[float] = None


class Message(BaseModel):
    """Complete message record, as stored and as pushed to clients.

    Attributes:
        id: Unique message identifier.
        conversationId: Owning conversation.
        senderId: User who composed the message.
        content: Text content, or the tombstone once deleted.
        messageType: One of :class:`MessageType`.
        payload: Structured media/shared-content data for non-text types.
        replyTo: Id of a message in the same conversation.
        forwarded: True when created through forwarding.
        forwardedFrom: Original sender of a forwarded message.
        isEdited / editedAt: Edit state.
        isDeleted / deletedAt: Soft-delete state.
        readBy: One read marker per recipient.
        reactions: At most one reaction per user, in first-reaction order.
        createdAt: Unix timestamp of creation.
        seq: Store-assigned sequence, breaks ``createdAt`` ties.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversationId: str
    senderId: str
    content: str = ""
    messageType: MessageType = MessageType.TEXT
    payload: Optional[dict] = None
    replyTo: Optional[str] = None
    forwarded: bool = False
    forwardedFrom: Optional[str] = None
    isEdited: bool = False
    editedAt: Optional[float] = None
    isDeleted: bool = False
    deletedAt: Optional[float] = None
    readBy: List[ReadMarker] = Field(default_factory=list)
    reactions: List[Reaction] = Field(default_factory=list)
    createdAt: float = Field(default_factory=time.time)
    seq: int = 0

    def recipients(self) -> List[str]:
        return [marker.userId for marker in self.readBy]

    def is_read_by(self, user_id: str) -> bool:
        return any(m.userId == user_id and m.isRead for m in self.readBy)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class SendMessageRequest(BaseModel):
    """Request body for ``POST /messages`` and the ``send_message`` event.

    Exactly one of ``conversationId`` and ``recipientId`` must be given.
    """
    conversationId: Optional[str] = None
    recipientId: Optional[str] = None
    content: str = ""
    messageType: MessageType = MessageType.TEXT
    replyTo: Optional[str] = None
    payload: Optional[dict] = None

    @model_validator(mode="after")
    def _check_target_and_content(self) -> "SendMessageRequest":
        if bool(self.conversationId) == bool(self.recipientId):
            raise ValueError("Provide exactly one of conversationId or recipientId")
        if self.messageType == MessageType.TEXT:
            if not self.content or not self.content.strip():
                raise ValueError("content is required for text messages")
        elif not self.payload:
            raise ValueError(f"payload is required for {self.messageType.value} messages")
        return self


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1)


class ForwardMessageRequest(BaseModel):
    receiverId: str = Field(..., min_length=1)
