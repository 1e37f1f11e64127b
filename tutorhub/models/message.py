from datetime import datetime
from typing import Literal, TypedDict


SenderType = Literal["client", "tutor"]


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    content: str
    sender_type: SenderType
    created_at: datetime
