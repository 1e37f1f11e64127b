from typing import Optional

from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):

    tutor_id: str = Field(alias="tutorId")
    exam_type: str = Field(alias="examType")
    lesson_quantity: int = Field(default=1, ge=1, alias="lessonQuantity")
    custom_amount: Optional[float] = Field(default=None, alias="customAmount")

    model_config = {"populate_by_name": True}


class PaymentSuccessRequest(BaseModel):

    session_id: str = Field(alias="sessionId")

    model_config = {"populate_by_name": True}
