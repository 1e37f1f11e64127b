from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from tutorhub.models.profile import ProfileDocument
from tutorhub.utils.clock import utcnow


class ProfileRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("profiles")

    async def get_by_id(self, user_id: str) -> Optional[ProfileDocument]:
        return await self._collection.find_one({"_id": user_id})

    async def update_fields(self, user_id: str, fields: Dict[str, Any]) -> bool:
        result = await self._collection.update_one({"_id": user_id}, {"$set": {**fields, "updated_at": utcnow()}})
        return result.matched_count > 0

    async def delete(self, user_id: str) -> bool:
        result = await self._collection.delete_one({"_id": user_id})
        return result.deleted_count > 0
