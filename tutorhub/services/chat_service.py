import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from tutorhub.config import settings
from tutorhub.repositories.conversation_repository import ConversationRepository
from tutorhub.repositories.message_repository import MessageRepository
from tutorhub.repositories.profile_repository import ProfileRepository
from tutorhub.schemas.chat import MessageCreate, serialize_message
from tutorhub.services.exceptions import (
    ConversationLoadError,
    ConversationNotFound,
    MessageValidationError,
    NotAParticipant,
)
from tutorhub.services.read_state import ReadTimeStore
from tutorhub.utils.clock import as_utc
from tutorhub.utils.realtime_bus import conversation_channel, user_channel

logger = logging.getLogger(__name__)

LOAD_FAILED = "Failed to load conversations."

COUNTERPART = {"client": "tutor", "tutor": "client"}


def role_from_profile(profile: Dict[str, Any]) -> str:
    return "tutor" if str(profile.get("user_type") or "").lower() == "tutor" else "client"


def count_unread(messages: List[Dict[str, Any]], viewer_role: str, last_read: Optional[datetime]) -> int:
    """Counterpart messages newer than the viewer's read marker (all of them without a marker)."""
    other = COUNTERPART[viewer_role]
    return sum(
        1
        for m in messages
        if m["sender_type"] == other and (last_read is None or as_utc(m["created_at"]) > last_read)
    )


def effective_updated_at(summary: Dict[str, Any]) -> datetime:
    updated = as_utc(summary["updated_at"])
    last = summary.get("last_message")
    if last is not None:
        return max(updated, as_utc(last["created_at"]))
    return updated


def validate_content(content: Any) -> str:
    try:
        return MessageCreate(content=content).content
    except ValidationError as exc:
        err = exc.errors()[0]
        cause = err.get("ctx", {}).get("error")
        raise MessageValidationError(str(cause) if cause else err["msg"]) from exc


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        profile_repo: ProfileRepository,
        read_store: ReadTimeStore,
        bus=None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._profile_repo = profile_repo
        self._read_store = read_store
        self._bus = bus

    async def start_conversation(
        self,
        client_id: str,
        tutor_id: str,
        tutor_name: Optional[str] = None,
        service_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        if client_id == tutor_id:
            raise ValueError("Cannot start a conversation with yourself")
        tutor = await self._profile_repo.get_by_id(tutor_id)
        if not tutor or role_from_profile(tutor) != "tutor":
            raise ConversationNotFound("Tutor not found")
        client = await self._profile_repo.get_by_id(client_id)
        client_name = (client or {}).get("name") or "Student"
        return await self._conversation_repo.get_or_create(
            client_id,
            tutor_id,
            client_name=client_name,
            tutor_name=tutor_name or tutor.get("name") or "Tutor",
            service_type=service_type,
        )

    async def get_conversation_for(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        convo = await self._conversation_repo.get_by_id(conversation_id)
        if not convo:
            raise ConversationNotFound("Conversation not found")
        if user_id not in (convo["client_id"], convo["tutor_id"]):
            raise NotAParticipant("Not a participant in this conversation")
        return convo

    async def get_history(self, conversation_id: str, user_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        await self.get_conversation_for(conversation_id, user_id)
        return await self._message_repo.get_messages_by_conversation(conversation_id, since=since)

    async def send_message(self, conversation_id: str, sender_id: str, content: Any) -> Dict[str, Any]:
        cleaned = validate_content(content)
        convo = await self.get_conversation_for(conversation_id, sender_id)
        sender_type = "client" if convo["client_id"] == sender_id else "tutor"
        saved = await self._message_repo.save_message(convo["_id"], cleaned, sender_type)
        await self._bump_conversation(convo["_id"], saved["created_at"])
        await self._publish_message(convo, saved)
        return saved

    async def _bump_conversation(self, conversation_id: str, at: datetime) -> None:
        attempts = max(settings.CONVERSATION_BUMP_RETRIES, 1)
        for attempt in range(1, attempts + 1):
            try:
                await self._conversation_repo.bump_updated_at(conversation_id, at)
                return
            except PyMongoError:
                logger.warning(
                    "Bumping conversation %s failed (attempt %d/%d)", conversation_id, attempt, attempts, exc_info=True
                )
        # message is stored; list ordering falls back to the last message time
        logger.error("Conversation %s left with a stale updated_at", conversation_id)

    async def _publish_message(self, convo: Dict[str, Any], message: Dict[str, Any]) -> None:
        if self._bus is None:
            return
        payload = json.dumps({"type": "message", "message": serialize_message(message)})
        channels = (
            conversation_channel(convo["_id"]),
            user_channel(convo["client_id"]),
            user_channel(convo["tutor_id"]),
        )
        for channel in channels:
            try:
                await self._bus.publish(channel, payload)
            except Exception:
                # subscribers refetch missed messages when they reconnect
                logger.warning("Publishing message %s to %s failed", message["_id"], channel, exc_info=True)

    async def list_conversations(self, user_id: str) -> Tuple[str, List[Dict[str, Any]]]:
        """Return ``(role, summaries)`` for the user, newest activity first."""
        try:
            read_times = await self._read_store.get(user_id)
            profile = await self._profile_repo.get_by_id(user_id)
        except (PyMongoError, RedisError) as exc:
            logger.exception("Read markers or profile lookup failed for user %s", user_id)
            raise ConversationLoadError(LOAD_FAILED) from exc
        if profile is None:
            logger.error("No profile for user %s", user_id)
            raise ConversationLoadError(LOAD_FAILED)
        role = role_from_profile(profile)

        try:
            convos = await self._conversation_repo.list_for_user(user_id, role)
            grouped = await self._message_repo.get_messages_for_conversations([c["_id"] for c in convos])
        except PyMongoError as exc:
            logger.exception("Conversation fetch failed for user %s", user_id)
            raise ConversationLoadError(LOAD_FAILED) from exc

        summaries: List[Dict[str, Any]] = []
        for convo in convos:
            messages = grouped.get(convo["_id"], [])
            if not messages:
                continue
            summaries.append(
                {
                    **convo,
                    "last_message": messages[-1],
                    "unread_count": count_unread(messages, role, read_times.get(convo["_id"])),
                }
            )
        summaries.sort(key=effective_updated_at, reverse=True)
        return role, summaries

    async def unread_total(self, user_id: str) -> int:
        _, summaries = await self.list_conversations(user_id)
        return sum(s["unread_count"] for s in summaries)

    async def mark_read(self, conversation_id: str, user_id: str) -> datetime:
        await self.get_conversation_for(conversation_id, user_id)
        return await self._read_store.mark_as_read(user_id, conversation_id)
