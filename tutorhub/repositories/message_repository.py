from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from tutorhub.models.message import MessageDocument, SenderType
from tutorhub.utils.clock import utcnow


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])

    async def save_message(self, conversation_id: str, content: str, sender_type: SenderType) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "content": content,
            "sender_type": sender_type,
            "created_at": utcnow(),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        since: Optional[datetime] = None,
    ) -> List[MessageDocument]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if since is not None:
            query["created_at"] = {"$gt": since}
        cursor = self.collection.find(query).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        items = await cursor.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def get_messages_for_conversations(self, conversation_ids: List[str]) -> Dict[str, List[MessageDocument]]:
        grouped: Dict[str, List[MessageDocument]] = defaultdict(list)
        if not conversation_ids:
            return grouped
        cursor = self.collection.find({"conversation_id": {"$in": conversation_ids}}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        async for doc in cursor:
            doc["_id"] = str(doc.get("_id"))
            grouped[doc["conversation_id"]].append(doc)
        return grouped

    async def delete_for_conversations(self, conversation_ids: List[str]) -> int:
        if not conversation_ids:
            return 0
        result = await self.collection.delete_many({"conversation_id": {"$in": conversation_ids}})
        return result.deleted_count or 0
