import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tutorhub.database.connection import mongo_db_dependency
from tutorhub.repositories.conversation_repository import ConversationRepository
from tutorhub.repositories.message_repository import MessageRepository
from tutorhub.repositories.payment_repository import PaymentRepository
from tutorhub.repositories.profile_repository import ProfileRepository
from tutorhub.schemas.user import CurrentUser
from tutorhub.services.account_service import AccountService
from tutorhub.services.chat_service import ChatService
from tutorhub.services.exceptions import PaymentsNotConfigured
from tutorhub.services.payment_service import PaymentService, get_stripe_client
from tutorhub.services.read_state import ReadStateNotifier, ReadTimeStore
from tutorhub.utils.kv_store import get_kv_store
from tutorhub.utils.realtime_bus import get_bus
from tutorhub.utils.security import decode_access_token, revoked_token_key, user_from_claims

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403


async def get_realtime_bus():
    return await get_bus()


async def get_key_value_store():
    return await get_kv_store()


async def resolve_token(token: str, kv_store) -> Optional[CurrentUser]:
    """Return the user behind a token, or None if it is invalid or signed out."""
    try:
        claims = decode_access_token(token)
    except jwt.PyJWTError as exc:
        logger.info("Rejected access token: %s", exc)
        return None
    if await kv_store.exists(revoked_token_key(token)):
        return None
    return user_from_claims(claims)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    kv_store=Depends(get_key_value_store),
) -> CurrentUser:
    """FastAPI dependency: validate the Bearer token and return the session user."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = await resolve_token(credentials.credentials, kv_store)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return user


async def get_verified_user(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.email_verified:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Email verification required")
    return current_user


async def authenticate_websocket(websocket: WebSocket, kv_store) -> Optional[CurrentUser]:
    """Token comes in the ``?token=`` query parameter; closes the socket on failure."""
    token = websocket.query_params.get("token")
    user = await resolve_token(token, kv_store) if token else None
    if user is None:
        await websocket.close(code=WS_UNAUTHORIZED)
    return user


async def get_read_store(kv_store=Depends(get_key_value_store), bus=Depends(get_realtime_bus)) -> ReadTimeStore:
    return ReadTimeStore(kv_store, ReadStateNotifier(bus))


def get_chat_service(
    db=Depends(mongo_db_dependency),
    read_store: ReadTimeStore = Depends(get_read_store),
    bus=Depends(get_realtime_bus),
) -> ChatService:
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        ProfileRepository(db),
        read_store,
        bus=bus,
    )


def get_payment_service(db=Depends(mongo_db_dependency)) -> PaymentService:
    try:
        client = get_stripe_client()
    except PaymentsNotConfigured:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are not configured")
    return PaymentService(ProfileRepository(db), PaymentRepository(db), client)


def get_account_service(db=Depends(mongo_db_dependency), read_store: ReadTimeStore = Depends(get_read_store)) -> AccountService:
    payment_service = None
    try:
        payment_service = PaymentService(ProfileRepository(db), PaymentRepository(db), get_stripe_client())
    except PaymentsNotConfigured:
        logger.info("Stripe not configured; connected accounts are left in place on deletion")
    return AccountService(
        ProfileRepository(db),
        ConversationRepository(db),
        MessageRepository(db),
        PaymentRepository(db),
        read_store,
        payment_service=payment_service,
    )
