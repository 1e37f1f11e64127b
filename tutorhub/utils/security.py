import hashlib
import time
from typing import Any, Dict

import jwt

from tutorhub.config import settings
from tutorhub.schemas.user import CurrentUser, TokenPayload


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify a provider-issued access token and return its claims.

    Raises ``jwt.PyJWTError`` for bad signatures, expired tokens or a wrong audience.
    """
    options = {"require": ["sub", "exp"]}
    if settings.AUTH_JWT_AUDIENCE:
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE,
            options=options,
        )
    options["verify_aud"] = False
    return jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=[settings.AUTH_JWT_ALGORITHM], options=options)


def user_from_claims(claims: Dict[str, Any]) -> CurrentUser:
    payload = TokenPayload.model_validate(claims)
    verified = payload.email_verified
    if verified is None:
        verified = bool(payload.user_metadata.get("email_verified", False))
    return CurrentUser(id=payload.sub, email=payload.email or None, email_verified=verified)


def revoked_token_key(token: str) -> str:
    return "revoked_token:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def seconds_until_expiry(claims: Dict[str, Any]) -> int:
    return max(int(claims["exp"] - time.time()), 1)
