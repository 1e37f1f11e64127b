from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from tutorhub.models.payment import PaymentDocument
from tutorhub.utils.clock import utcnow


class PaymentRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["payments"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("stripe_session_id", ASCENDING)], unique=True)

    async def create(self, fields: Dict[str, Any]) -> PaymentDocument:
        doc: PaymentDocument = {**fields, "status": "pending", "created_at": utcnow(), "completed_at": None}
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_by_session(self, session_id: str) -> Optional[PaymentDocument]:
        doc = await self.collection.find_one({"stripe_session_id": session_id})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def mark_completed(self, session_id: str, payment_intent: Optional[str]) -> bool:
        result = await self.collection.update_one(
            {"stripe_session_id": session_id, "status": "pending"},
            {"$set": {"status": "completed", "stripe_payment_intent": payment_intent, "completed_at": utcnow()}},
        )
        return bool(result.modified_count)

    async def delete_involving(self, user_id: str) -> int:
        result = await self.collection.delete_many({"$or": [{"student_id": user_id}, {"tutor_id": user_id}]})
        return result.deleted_count or 0
