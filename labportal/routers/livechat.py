"""Live-chat handoff API routes and the chat WebSocket endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, WebSocket
from starlette.concurrency import run_in_threadpool

from ..core.errors import NotAuthorized
from ..dependencies import get_gateway, get_livechat_service
from ..livechat import schemas
from ..livechat.gateway import ChatGateway
from ..livechat.service import LiveChatService
from ..models import SenderRole, User
from ..security.auth import get_optional_user, require_role

router = APIRouter(tags=["livechat"])

_operator = require_role("operator")


@router.post("/api/livechat/handoff", response_model=schemas.HandoffResult)
async def request_handoff(
    payload: schemas.HandoffRequest,
    caller: User | None = Depends(get_optional_user),
    service: LiveChatService = Depends(get_livechat_service),
    gateway: ChatGateway = Depends(get_gateway),
) -> schemas.HandoffResult:
    """Queue a chatbot session for a human operator.

    The registered user is taken from the bearer token; anonymous visitors
    send no token and are queued by ``session_id``.
    """
    if payload.user_id is not None and (caller is None or caller.id != payload.user_id):
        raise NotAuthorized("user_id must match the access token.")
    result = await run_in_threadpool(
        service.request_handoff,
        payload.session_id,
        caller.id if caller is not None else None,
        payload.user_name,
        payload.reason,
    )
    await gateway.broadcast_pending()
    return result


@router.get("/api/livechat/pending", response_model=schemas.PendingList)
def list_pending(
    _: User = Depends(_operator),
    service: LiveChatService = Depends(get_livechat_service),
) -> schemas.PendingList:
    """Waiting conversations in FIFO order."""
    items = service.list_pending()
    return schemas.PendingList(items=items, total=len(items))


@router.get("/api/livechat/stats", response_model=schemas.ChatStats)
def chat_stats(
    _: User = Depends(_operator),
    service: LiveChatService = Depends(get_livechat_service),
) -> schemas.ChatStats:
    return service.stats()


@router.get("/api/livechat/conversations/mine", response_model=schemas.ConversationList)
def my_conversations(
    operator: User = Depends(_operator),
    service: LiveChatService = Depends(get_livechat_service),
) -> schemas.ConversationList:
    """Conversations currently assigned to the calling operator."""
    items = service.list_operator_conversations(operator.id)
    return schemas.ConversationList(items=items, total=len(items))


@router.get(
    "/api/livechat/conversations/{conversation_id}/messages",
    response_model=schemas.MessageList,
)
def conversation_messages(
    conversation_id: int,
    limit: int = Query(50, ge=1, le=200),
    _: User = Depends(_operator),
    service: LiveChatService = Depends(get_livechat_service),
) -> schemas.MessageList:
    """Message history; user messages are marked read for the operator."""
    items = service.get_messages(conversation_id, limit)
    service.mark_messages_read(conversation_id, SenderRole.OPERATOR)
    return schemas.MessageList(conversation_id=conversation_id, items=items)


@router.post(
    "/api/livechat/conversations/{conversation_id}/claim",
    response_model=schemas.ClaimResult,
)
async def claim_conversation(
    conversation_id: int,
    operator: User = Depends(_operator),
    service: LiveChatService = Depends(get_livechat_service),
    gateway: ChatGateway = Depends(get_gateway),
) -> schemas.ClaimResult:
    """Take a waiting conversation; losers of a race get ``AlreadyAssigned``."""
    result = await run_in_threadpool(
        service.claim_conversation, conversation_id, operator.id
    )
    await gateway.notify_assigned(result)
    return result


@router.post(
    "/api/livechat/conversations/{conversation_id}/close",
    response_model=schemas.CloseResult,
)
async def close_conversation(
    conversation_id: int,
    operator: User = Depends(_operator),
    service: LiveChatService = Depends(get_livechat_service),
    gateway: ChatGateway = Depends(get_gateway),
) -> schemas.CloseResult:
    result = await run_in_threadpool(
        service.close_conversation, conversation_id, operator.id
    )
    await gateway.notify_closed(result)
    return result


@router.post(
    "/api/livechat/conversations/{conversation_id}/messages",
    response_model=schemas.PostMessageResult,
)
async def post_operator_message(
    conversation_id: int,
    payload: schemas.PostMessageRequest,
    operator: User = Depends(_operator),
    service: LiveChatService = Depends(get_livechat_service),
    gateway: ChatGateway = Depends(get_gateway),
) -> schemas.PostMessageResult:
    """Send a message as the calling operator."""
    conversation = await run_in_threadpool(service.get_conversation, conversation_id)
    if conversation.operator_id != operator.id:
        raise NotAuthorized("This conversation is not assigned to you.")
    message = await run_in_threadpool(
        service.post_message,
        conversation_id,
        SenderRole.OPERATOR,
        operator.id,
        payload.content,
    )
    await gateway.notify_message(message)
    return schemas.PostMessageResult(message=message)


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, gateway: ChatGateway = Depends(get_gateway)):
    """Bidirectional chat channel for users and operators."""
    await gateway.serve(websocket)
