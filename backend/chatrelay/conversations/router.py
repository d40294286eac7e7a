"""Conversation router: list, create and fetch conversations; manage groups."""
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from chatrelay.auth.dependencies import get_current_identity
from chatrelay.auth.service import Identity
from chatrelay.realtime.protocol import ServerEvent
from chatrelay.services import Services, get_services

from .schemas import (
    AddParticipantRequest,
    ConversationType,
    CreateConversationRequest,
    UpdateConversationRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("")
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """List the caller's conversations, latest activity first.

    Each conversation carries the caller's ``unreadCount``.
    """
    rows, total = services.conversations.list_for_user(identity.userId, page, limit)
    conversations = []
    for conversation, unread in rows:
        item = conversation.model_dump(mode="json")
        item["unreadCount"] = unread
        conversations.append(item)

    return JSONResponse({
        "conversations": conversations,
        "page": page,
        "limit": limit,
        "total": total,
        "hasMore": page * limit < total,
    })


@router.post("", status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Create a group, or get-or-create a direct conversation.

    Direct creation is idempotent: an existing conversation for the pair is
    returned with 200 instead of 201.
    """
    if body.type == ConversationType.DIRECT:
        other = body.participants[0]
        existed = services.conversations.find_direct(identity.userId, other) is not None
        conversation = services.conversations.resolve_direct(identity.userId, other)
        status = 200 if existed else 201
    else:
        conversation = services.conversations.resolve_group(
            identity.userId,
            body.participants,
            name=body.name,
            description=body.description,
            avatar=body.avatar,
        )
        status = 201

    return JSONResponse({"conversation": conversation.model_dump(mode="json")}, status_code=status)


@router.get("/user/{user_id}")
async def get_direct_conversation(
    user_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Get (creating on first contact) the caller's direct conversation with a user."""
    conversation = services.conversations.resolve_direct(identity.userId, user_id)
    return JSONResponse({"conversation": conversation.model_dump(mode="json")})


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Fetch one conversation; only its active participants may read it."""
    conversation = services.conversations.require_participant(conversation_id, identity.userId)
    item = conversation.model_dump(mode="json")
    item["unreadCount"] = services.store.unread_count(conversation_id, identity.userId)
    return JSONResponse({"conversation": item})


@router.put("/{conversation_id}")
async def update_group(
    conversation_id: str,
    body: UpdateConversationRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Update a group's name, description or avatar (admins only)."""
    changes = body.model_dump(include=body.model_fields_set)
    conversation = services.conversations.update_group(conversation_id, identity.userId, changes)
    return JSONResponse({"conversation": conversation.model_dump(mode="json")})


@router.post("/{conversation_id}/participants")
async def add_participant(
    conversation_id: str,
    body: AddParticipantRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    conversation = services.conversations.add_participant(
        conversation_id, identity.userId, body.userId
    )
    return JSONResponse({"conversation": conversation.model_dump(mode="json")})


@router.delete("/{conversation_id}/participants/{user_id}")
async def remove_participant(
    conversation_id: str,
    user_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Remove a member (admins only). Their open sockets leave the room."""
    conversation = services.conversations.remove_participant(
        conversation_id, identity.userId, user_id
    )
    await services.registry.evict(user_id, conversation.room, ServerEvent.ROOM_LEFT.value)
    return JSONResponse({"conversation": conversation.model_dump(mode="json")})


@router.delete("/{conversation_id}")
async def leave_conversation(
    conversation_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Leave a group. The last member leaving deactivates it."""
    conversation = services.conversations.leave(conversation_id, identity.userId)
    await services.registry.evict(identity.userId, conversation.room, ServerEvent.ROOM_LEFT.value)
    return JSONResponse({
        "message": "Conversation left successfully",
        "conversationId": conversation_id,
    })
