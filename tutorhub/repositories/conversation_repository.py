from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from tutorhub.models.conversation import ConversationDocument
from tutorhub.utils.clock import utcnow


def _to_object_id(conversation_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(conversation_id)
    except (InvalidId, TypeError):
        return None


def _normalize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc:
        doc["_id"] = str(doc.get("_id"))
    return doc


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("client_id", ASCENDING), ("tutor_id", ASCENDING)], unique=True)
        await self.collection.create_index([("client_id", ASCENDING), ("updated_at", DESCENDING)])
        await self.collection.create_index([("tutor_id", ASCENDING), ("updated_at", DESCENDING)])

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = _to_object_id(conversation_id)
        if oid is None:
            return None
        return _normalize(await self.collection.find_one({"_id": oid}))

    async def find_by_pair(self, client_id: str, tutor_id: str) -> Optional[ConversationDocument]:
        return _normalize(await self.collection.find_one({"client_id": client_id, "tutor_id": tutor_id}))

    async def get_or_create(
        self,
        client_id: str,
        tutor_id: str,
        client_name: str,
        tutor_name: str,
        service_type: Optional[str] = None,
    ) -> ConversationDocument:
        existing = await self.find_by_pair(client_id, tutor_id)
        if existing:
            return existing
        now = utcnow()
        doc: Dict[str, Any] = {
            "client_id": client_id,
            "client_name": client_name,
            "tutor_id": tutor_id,
            "tutor_name": tutor_name,
            "service_type": service_type,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # another request created the pair between lookup and insert
            return await self.find_by_pair(client_id, tutor_id)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def bump_updated_at(self, conversation_id: str, at: datetime) -> None:
        # $max keeps updated_at monotonic when sends race
        await self.collection.update_one({"_id": ObjectId(conversation_id)}, {"$max": {"updated_at": at}})

    async def list_for_user(self, user_id: str, role: str) -> List[ConversationDocument]:
        field = "tutor_id" if role == "tutor" else "client_id"
        cursor = self.collection.find({field: user_id}).sort([("updated_at", DESCENDING), ("_id", DESCENDING)])
        items = await cursor.to_list(length=None)
        for it in items:
            _normalize(it)
        return items

    async def list_ids_involving(self, user_id: str) -> List[str]:
        cursor = self.collection.find({"$or": [{"client_id": user_id}, {"tutor_id": user_id}]}, {"_id": 1})
        return [str(doc["_id"]) async for doc in cursor]

    async def delete_involving(self, user_id: str) -> int:
        result = await self.collection.delete_many({"$or": [{"client_id": user_id}, {"tutor_id": user_id}]})
        return result.deleted_count or 0
