from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from agrichat.core.errors import ChatError
from agrichat.database.connection import mongo_db_dependency
from agrichat.repositories.conversation_repository import ConversationRepository
from agrichat.repositories.message_repository import MessageRepository
from agrichat.routers.chat import get_gateway
from agrichat.schemas.chat import ConversationCreate, MessageCreate
from agrichat.services.chat_service import ChatService
from agrichat.services.gateway import MessageGateway
from agrichat.utils.dependencies import get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    return ChatService(msg_repo, convo_repo)


def _http_error(exc: ChatError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "reason": exc.reason})


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), page: int = Query(1, ge=1), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items = await service.list_conversations_for_user(current_user["_id"], limit=limit, page=page)
    return {"items": items}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(payload: ConversationCreate, current_user: dict = Depends(get_current_user), gateway: MessageGateway = Depends(get_gateway)):
    try:
        return await gateway.create_conversation(current_user["_id"], payload.participant_ids)
    except ChatError as exc:
        raise _http_error(exc)


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, limit: Optional[int] = Query(None, ge=1, le=200), before_seq: Optional[int] = Query(None, ge=1), current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        messages = await service.list_messages(conversation_id, current_user["_id"], limit=limit, before_seq=before_seq)
    except ChatError as exc:
        raise _http_error(exc)
    next_before_seq = None
    if limit is not None and len(messages) == limit and messages[0].seq > 1:
        next_before_seq = messages[0].seq
    return {"items": messages, "next_before_seq": next_before_seq}


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, payload: MessageCreate, current_user: dict = Depends(get_current_user), gateway: MessageGateway = Depends(get_gateway)):
    try:
        return await gateway.submit(current_user["_id"], conversation_id, payload.body, payload.client_message_id)
    except ChatError as exc:
        raise _http_error(exc)


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), gateway: MessageGateway = Depends(get_gateway)):
    try:
        await gateway.mark_read(conversation_id, current_user["_id"])
    except ChatError as exc:
        raise _http_error(exc)
    return {"ok": True}
