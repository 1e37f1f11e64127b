from fastapi import APIRouter, Depends

from tutorhub.schemas.user import CurrentUser
from tutorhub.services.account_service import AccountService
from tutorhub.utils.dependencies import get_account_service, get_current_user


router = APIRouter(prefix="/account", tags=["account"])


@router.get("/me")
async def me(current_user: CurrentUser = Depends(get_current_user)):
    return current_user.model_dump()


@router.delete("")
async def delete_account(current_user: CurrentUser = Depends(get_current_user), service: AccountService = Depends(get_account_service)):
    return await service.delete_account(current_user.id)
