from datetime import datetime
from typing import Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    client_id: str
    client_name: str
    tutor_id: str
    tutor_name: str
    service_type: Optional[str]
    created_at: datetime
    # bumped (never lowered) whenever a message is added
    updated_at: datetime
