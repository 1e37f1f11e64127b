from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tutorhub.config import settings


class MessageCreate(BaseModel):

    content: str

    @field_validator("content")
    @classmethod
    def content_length(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Message cannot be empty")
        if len(cleaned) > settings.MESSAGE_MAX_LENGTH:
            raise ValueError(f"Message must be under {settings.MESSAGE_MAX_LENGTH} characters")
        return cleaned


class MessageOut(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    conversation_id: str
    content: str
    sender_type: Literal["client", "tutor"]
    created_at: datetime


class ConversationStart(BaseModel):

    tutor_id: str
    tutor_name: Optional[str] = None
    service_type: Optional[str] = None


class ConversationOut(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    client_id: str
    client_name: str
    tutor_id: str
    tutor_name: str
    service_type: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ConversationSummary(ConversationOut):

    last_message: Optional[MessageOut] = None
    unread_count: int = 0


def serialize_message(doc: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-ready message, the shape pushed over the realtime bus and websockets."""
    return MessageOut.model_validate(doc).model_dump(mode="json")


def serialize_messages(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_message(d) for d in docs]
