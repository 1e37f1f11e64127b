from datetime import datetime
from typing import Dict, Literal, Optional, TypedDict


UserType = Literal["Student", "Tutor"]


class ProfileDocument(TypedDict, total=False):

    # auth provider user id
    _id: str
    name: Optional[str]
    email: Optional[str]
    user_type: UserType
    email_verified: bool
    # exam name -> hourly rate (GBP)
    exam_rates: Dict[str, float]
    stripe_account_id: Optional[str]
    charges_enabled: bool
    payouts_enabled: bool
    updated_at: datetime
