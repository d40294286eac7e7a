"""Message router: send, history, receipts, reactions, edit/delete, forward.

Every endpoint acts as the identity of the bearer token. Mutations are
committed before their real-time events are fanned out, so the response of
a request always reflects state that other clients can refetch.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from chatrelay.auth.dependencies import get_current_identity
from chatrelay.auth.service import Identity
from chatrelay.services import Services, get_services

from .schemas import EditMessageRequest, ForwardMessageRequest, ReactionRequest, SendMessageRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("", status_code=201)
async def send_message(
    body: SendMessageRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Send a message to a conversation or, by ``recipientId``, to a direct
    conversation that is created on first contact.

    Returns:
        201 with the stored message as ``messageData``.
    """
    message = await services.pipeline.send(
        sender_id=identity.userId,
        content=body.content,
        message_type=body.messageType,
        conversation_id=body.conversationId,
        recipient_id=body.recipientId,
        reply_to=body.replyTo,
        payload=body.payload,
    )
    return JSONResponse(
        {"message": "Message sent", "messageData": message.model_dump(mode="json")},
        status_code=201,
    )


@router.get("/conversation/{conversation_id}")
async def get_messages(
    conversation_id: str,
    before: Optional[str] = Query(None, description="Message id cursor"),
    limit: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Page of history, oldest first. Fetching marks the conversation read
    for the caller, which notifies the senders."""
    messages, has_more = services.pipeline.history(
        conversation_id, identity.userId, limit=limit, before=before
    )
    marked = await services.receipts.mark_conversation_read(conversation_id, identity.userId)
    if marked:
        messages, has_more = services.pipeline.history(
            conversation_id, identity.userId, limit=limit, before=before
        )

    return JSONResponse({
        "messages": [m.model_dump(mode="json") for m in messages],
        "hasMore": has_more,
    })


@router.put("/conversation/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    message_ids = await services.receipts.mark_conversation_read(conversation_id, identity.userId)
    return JSONResponse({"messageIds": message_ids})


@router.put("/{message_id}/seen")
async def mark_seen(
    message_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Mark one message read. ``changed`` is false for a repeated or sender call."""
    changed = await services.receipts.mark_seen(message_id, identity.userId)
    return JSONResponse({"messageId": message_id, "changed": changed})


@router.put("/{message_id}")
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    message = await services.mutations.edit_message(message_id, identity.userId, body.content)
    return JSONResponse({"messageData": message.model_dump(mode="json")})


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Soft-delete one's own message. Repeating the call is harmless."""
    await services.mutations.delete_message(message_id, identity.userId)
    return JSONResponse({"messageId": message_id})


@router.post("/{message_id}/reaction")
async def add_reaction(
    message_id: str,
    body: ReactionRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Set the caller's reaction, replacing any previous one."""
    message = await services.mutations.add_reaction(message_id, identity.userId, body.emoji)
    return JSONResponse({
        "messageId": message_id,
        "reactions": [r.model_dump(mode="json") for r in message.reactions],
    })


@router.delete("/{message_id}/reaction")
async def remove_reaction(
    message_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    message = await services.mutations.remove_reaction(message_id, identity.userId)
    return JSONResponse({
        "messageId": message_id,
        "reactions": [r.model_dump(mode="json") for r in message.reactions],
    })


@router.post("/{message_id}/forward", status_code=201)
async def forward_message(
    message_id: str,
    body: ForwardMessageRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Forward a message into the caller's direct conversation with ``receiverId``."""
    message = await services.mutations.forward_message(
        message_id, identity.userId, body.receiverId
    )
    logger.info(f"[Messages] {identity.userId} forwarded {message_id} to {body.receiverId}")
    return JSONResponse({"messageData": message.model_dump(mode="json")}, status_code=201)
