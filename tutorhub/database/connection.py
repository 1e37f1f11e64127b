import logging
from typing import AsyncIterator, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from tutorhub.config import settings
from tutorhub.repositories.conversation_repository import ConversationRepository
from tutorhub.repositories.message_repository import MessageRepository
from tutorhub.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> None:
    global _client
    # tz_aware so read markers and message timestamps compare as aware datetimes
    _client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    db = _client[settings.MONGODB_DB]
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await PaymentRepository(db).ensure_indexes()
    logger.info("Connected to MongoDB database %s", settings.MONGODB_DB)


async def close_mongo_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB client is not connected")
    return _client[settings.MONGODB_DB]


async def mongo_db_dependency() -> AsyncIterator[AsyncIOMotorDatabase]:
    yield get_database()
