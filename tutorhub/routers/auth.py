import logging

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials

from tutorhub.schemas.user import CurrentUser
from tutorhub.utils.dependencies import bearer_scheme, get_current_user, get_key_value_store
from tutorhub.utils.security import decode_access_token, revoked_token_key, seconds_until_expiry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/logout")
async def logout(
    current_user: CurrentUser = Depends(get_current_user),
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    kv_store=Depends(get_key_value_store),
):
    token = credentials.credentials
    claims = decode_access_token(token)
    await kv_store.set(revoked_token_key(token), current_user.id, ttl_seconds=seconds_until_expiry(claims))
    logger.info("User %s signed out", current_user.id)
    return {"msg": "Logged out"}
