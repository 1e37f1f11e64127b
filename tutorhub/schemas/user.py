from typing import Optional

from pydantic import BaseModel, EmailStr


class CurrentUser(BaseModel):

    id: str
    email: Optional[EmailStr] = None
    email_verified: bool = False


class TokenPayload(BaseModel):

    sub: str
    exp: int
    email: Optional[str] = None
    email_verified: Optional[bool] = None
    user_metadata: dict = {}
