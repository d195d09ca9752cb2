# app/api/v1/endpoints/users.py
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import require_anonymous, require_authenticated, require_local_user, require_verified
from app.db.session import get_db
from app.schemas.auth import MessageResponse, SignupResponse
from app.schemas.user import (
    ChangePasswordRequest,
    Statistics,
    UserCreate,
    UserProfile,
    UserProfileListResponse,
    UserProfileResponse,
    UserUpdate,
)
from app.services import auth as auth_service
from app.services import credential_store
from app.services import sessions as session_service
from app.services import users as user_service
from app.services.auth import RequestContext
from app.services.email import EmailSender, get_email_sender
from app.utils.time import to_epoch_ms

router = APIRouter(tags=["users"])


# === 註冊（僅限未登入） ===
@router.post("/me", response_model=SignupResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    payload: UserCreate,
    response: Response,
    ctx: RequestContext = Depends(require_anonymous),
    db: AsyncSession = Depends(get_db),
    email_sender: EmailSender = Depends(get_email_sender),
):
    """
    建立本地帳號並直接登入（未驗證狀態），同時寄出驗證信。
    """
    result = await auth_service.signup(
        db, ctx,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        email_sender=email_sender,
    )
    session_service.set_session_cookies(response, result.session)
    return SignupResponse(
        is_email_verified=result.user.is_email_verified,
        auth_strategy=result.user.auth_strategy,
        csrf_token=result.session.csrf_token,
        user_profile=UserProfile.model_validate(result.user),
        token_expire_timestamp=to_epoch_ms(result.token.expire),
    )


# === 目前登入者 ===
@router.get("/me", response_model=UserProfileResponse)
async def read_me(
    ctx: RequestContext = Depends(require_authenticated),
    db: AsyncSession = Depends(get_db),
):
    user = await credential_store.record_activity(db, ctx.user.id)
    return UserProfileResponse(user_profile=UserProfile.model_validate(user))


@router.put("/me", response_model=UserProfileResponse)
async def update_me(
    payload: UserUpdate,
    ctx: RequestContext = Depends(require_authenticated),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.update_profile(db, ctx.user.id, name=payload.name)
    return UserProfileResponse(user_profile=UserProfile.model_validate(user))


@router.put("/me/password", response_model=MessageResponse)
async def change_password(
    payload: ChangePasswordRequest,
    ctx: RequestContext = Depends(require_local_user),
    db: AsyncSession = Depends(get_db),
):
    await auth_service.change_password(
        db, ctx, old_password=payload.old_password, new_password=payload.new_password,
    )
    return MessageResponse(message="Password updated")


# === 需 email 已驗證 ===
@router.get("", response_model=UserProfileListResponse)
async def list_users(
    _: RequestContext = Depends(require_verified),
    db: AsyncSession = Depends(get_db),
):
    users = await user_service.list_users(db)
    return UserProfileListResponse(
        user_profile_list=[UserProfile.model_validate(u) for u in users],
    )


@router.get("/statistics", response_model=Statistics)
async def statistics(
    _: RequestContext = Depends(require_verified),
    db: AsyncSession = Depends(get_db),
):
    return await user_service.get_statistics(db)
