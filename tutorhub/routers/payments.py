from fastapi import APIRouter, Depends, Request

from tutorhub.config import settings
from tutorhub.schemas.payment import CheckoutRequest, PaymentSuccessRequest
from tutorhub.schemas.user import CurrentUser
from tutorhub.services.payment_service import PaymentService
from tutorhub.utils.dependencies import get_current_user, get_payment_service, get_verified_user


router = APIRouter(prefix="/payments", tags=["payments"])


def _origin(request: Request) -> str:
    return request.headers.get("origin") or settings.PUBLIC_SITE_URL


@router.post("/connect/account")
async def create_connect_account(request: Request, current_user: CurrentUser = Depends(get_verified_user), service: PaymentService = Depends(get_payment_service)):
    return await service.create_connect_account(current_user, _origin(request))


@router.get("/connect/status")
async def connect_status(current_user: CurrentUser = Depends(get_current_user), service: PaymentService = Depends(get_payment_service)):
    return await service.check_connect_status(current_user)


@router.post("/checkout")
async def create_checkout(body: CheckoutRequest, request: Request, current_user: CurrentUser = Depends(get_verified_user), service: PaymentService = Depends(get_payment_service)):
    return await service.create_checkout(
        current_user,
        tutor_id=body.tutor_id,
        exam_type=body.exam_type,
        lesson_quantity=body.lesson_quantity,
        origin=_origin(request),
        custom_amount=body.custom_amount,
    )


@router.post("/success")
async def payment_success(body: PaymentSuccessRequest, current_user: CurrentUser = Depends(get_current_user), service: PaymentService = Depends(get_payment_service)):
    return await service.handle_payment_success(body.session_id)
