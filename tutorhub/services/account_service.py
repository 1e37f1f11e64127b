import logging
from typing import Optional

from tutorhub.repositories.conversation_repository import ConversationRepository
from tutorhub.repositories.message_repository import MessageRepository
from tutorhub.repositories.payment_repository import PaymentRepository
from tutorhub.repositories.profile_repository import ProfileRepository
from tutorhub.services.exceptions import PaymentError
from tutorhub.services.payment_service import PaymentService
from tutorhub.services.read_state import ReadTimeStore

logger = logging.getLogger(__name__)


class AccountService:
    """Deletes a user and everything that hangs off them."""

    def __init__(
        self,
        profile_repo: ProfileRepository,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        payment_repo: PaymentRepository,
        read_store: ReadTimeStore,
        payment_service: Optional[PaymentService] = None,
    ) -> None:
        self._profile_repo = profile_repo
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._payment_repo = payment_repo
        self._read_store = read_store
        self._payment_service = payment_service

    async def delete_account(self, user_id: str) -> dict:
        profile = await self._profile_repo.get_by_id(user_id)
        account_id = (profile or {}).get("stripe_account_id")
        if account_id and self._payment_service is not None:
            try:
                await self._payment_service.delete_connect_account(account_id)
                logger.info("Deleted Connect account %s", account_id)
            except PaymentError:
                # carry on; the platform data still has to go
                logger.warning("Could not delete Connect account %s for user %s", account_id, user_id)

        conversation_ids = await self._conversation_repo.list_ids_involving(user_id)
        messages = await self._message_repo.delete_for_conversations(conversation_ids)
        conversations = await self._conversation_repo.delete_involving(user_id)
        payments = await self._payment_repo.delete_involving(user_id)
        await self._read_store.clear(user_id)
        await self._profile_repo.delete(user_id)
        logger.info(
            "Deleted account %s: %d conversations, %d messages, %d payments",
            user_id,
            conversations,
            messages,
            payments,
        )
        return {"success": True, "message": "Account successfully deleted"}
