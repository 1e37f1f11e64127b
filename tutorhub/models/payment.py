from datetime import datetime
from typing import Literal, Optional, TypedDict


PaymentStatus = Literal["pending", "completed"]


class PaymentDocument(TypedDict, total=False):
    _id: str
    student_id: str
    tutor_id: str
    stripe_session_id: str
    stripe_payment_intent: Optional[str]
    connected_account_id: Optional[str]
    # amounts in minor units (pence)
    amount: int
    platform_fee: int
    tutor_amount: int
    currency: str
    exam_type: str
    lesson_quantity: int
    status: PaymentStatus
    created_at: datetime
    completed_at: Optional[datetime]
