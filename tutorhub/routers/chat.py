import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pymongo.errors import PyMongoError

from tutorhub.schemas.chat import serialize_message, serialize_messages
from tutorhub.services.chat_service import ChatService
from tutorhub.services.exceptions import ConversationNotFound, MessageValidationError, NotAParticipant
from tutorhub.services.live_updates import ConversationThread, LiveUpdateListener, UnreadBadge
from tutorhub.services.read_state import ReadTimeStore
from tutorhub.utils.dependencies import (
    WS_FORBIDDEN,
    authenticate_websocket,
    get_chat_service,
    get_key_value_store,
    get_read_store,
    get_realtime_bus,
)
from tutorhub.utils.realtime_bus import conversation_channel, user_channel


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["chat"])


@router.websocket("/conversations/{conversation_id}")
async def conversation_socket(
    websocket: WebSocket,
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
    read_store: ReadTimeStore = Depends(get_read_store),
    bus=Depends(get_realtime_bus),
    kv_store=Depends(get_key_value_store),
):
    user = await authenticate_websocket(websocket, kv_store)
    if user is None:
        return
    try:
        history = await service.get_history(conversation_id, user.id)
    except (ConversationNotFound, NotAParticipant):
        await websocket.close(code=WS_FORBIDDEN)
        return

    await websocket.accept()
    thread = ConversationThread(conversation_id, user.id, read_store, serialize_messages(history))

    async def on_event(event):
        if event.get("type") == "message" and await thread.apply(event["message"]):
            await websocket.send_json(event)

    async def fetch_missed(since):
        return serialize_messages(await service.get_history(conversation_id, user.id, since=since))

    listener = LiveUpdateListener(
        bus,
        conversation_channel(conversation_id),
        on_event,
        fetch_missed=fetch_missed,
        last_seen=thread.last_created_at,
    )
    await listener.start()
    try:
        await websocket.send_json({"type": "history", "messages": thread.messages})
        await read_store.mark_as_read(user.id, conversation_id)
        while True:
            frame = await websocket.receive_json()
            kind = frame.get("type") if isinstance(frame, dict) else None
            if kind == "send":
                if not user.email_verified:
                    await websocket.send_json({"type": "error", "detail": "Email verification required"})
                    continue
                try:
                    saved = await service.send_message(conversation_id, user.id, frame.get("content", ""))
                except MessageValidationError as exc:
                    await websocket.send_json({"type": "error", "detail": str(exc)})
                    continue
                except PyMongoError:
                    logger.exception("Sending message to conversation %s failed", conversation_id)
                    await websocket.send_json({"type": "error", "detail": "Failed to send message. Please try again."})
                    continue
                await websocket.send_json({"type": "ack", "message_id": saved["_id"]})
                # the sender sees its own message even if the bus event is delayed
                message = serialize_message(saved)
                if await thread.apply(message):
                    await websocket.send_json({"type": "message", "message": message})
            elif kind == "read":
                await read_store.mark_as_read(user.id, conversation_id)
            else:
                await websocket.send_json({"type": "error", "detail": "Unknown frame type"})
    except WebSocketDisconnect:
        pass
    finally:
        thread.close()
        await listener.stop()


@router.websocket("/badge")
async def badge_socket(
    websocket: WebSocket,
    service: ChatService = Depends(get_chat_service),
    bus=Depends(get_realtime_bus),
    kv_store=Depends(get_key_value_store),
):
    user = await authenticate_websocket(websocket, kv_store)
    if user is None:
        return
    await websocket.accept()

    async def total():
        return await service.unread_total(user.id)

    async def push(value):
        await websocket.send_json({"type": "unread", "total": value})

    async def on_failure(exc):
        await websocket.send_json({"type": "error", "detail": str(exc)})

    badge = UnreadBadge(total, push, on_failure=on_failure)
    listener = LiveUpdateListener(bus, user_channel(user.id), badge.on_event)
    await listener.start()
    try:
        await badge.refresh()
        while True:
            # inbound frames are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await listener.stop()
