import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from pymongo.errors import PyMongoError

from tutorhub.schemas.chat import ConversationOut, ConversationStart, ConversationSummary, MessageOut
from tutorhub.schemas.user import CurrentUser
from tutorhub.services.chat_service import ChatService
from tutorhub.services.read_state import ReadTimeStore
from tutorhub.utils.dependencies import get_chat_service, get_current_user, get_read_store, get_verified_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    role, summaries = await service.list_conversations(current_user.id)
    items = [ConversationSummary.model_validate(s).model_dump(mode="json") for s in summaries]
    return {"role": role, "items": items, "unread_total": sum(s["unread_count"] for s in summaries)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_conversation(body: ConversationStart, current_user: CurrentUser = Depends(get_verified_user), service: ChatService = Depends(get_chat_service)):
    try:
        convo = await service.start_conversation(current_user.id, body.tutor_id, body.tutor_name, body.service_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return ConversationOut.model_validate(convo).model_dump(mode="json")


@router.get("/unread")
async def unread_total(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"total": await service.unread_total(current_user.id)}


@router.get("/read-markers")
async def read_markers(current_user: CurrentUser = Depends(get_current_user), read_store: ReadTimeStore = Depends(get_read_store)) -> Dict[str, str]:
    markers = await read_store.get(current_user.id)
    return {cid: ts.isoformat() for cid, ts in markers.items()}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages = await service.get_history(conversation_id, current_user.id)
    return {"items": [MessageOut.model_validate(m).model_dump(mode="json") for m in messages]}


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: Dict[str, str], current_user: CurrentUser = Depends(get_verified_user), service: ChatService = Depends(get_chat_service)):
    # validated by the service so the same rules apply to REST and websocket sends
    try:
        saved = await service.send_message(conversation_id, current_user.id, body.get("content", ""))
    except PyMongoError:
        logger.exception("Sending message to conversation %s failed", conversation_id)
        raise HTTPException(status_code=500, detail="Failed to send message. Please try again.")
    return MessageOut.model_validate(saved).model_dump(mode="json")


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    read_at = await service.mark_read(conversation_id, current_user.id)
    return {"conversation_id": conversation_id, "read_at": read_at.isoformat()}
