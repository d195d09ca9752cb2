# app/api/v1/endpoints/auth.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse
from jose import JWTError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.deps import get_request_context, require_anonymous, require_authenticated
from app.core.errors import BadRequestError
from app.core.security import TOKEN_LENGTH, create_oauth_state, decode_oauth_state, generate_secret
from app.db.session import get_db
from app.schemas.auth import (
    AuthStatus,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    ResetPasswordRequest,
    SessionResponse,
    VerificationEmailSent,
)
from app.services import auth as auth_service
from app.services import sessions as session_service
from app.services.auth import GoogleIdentity, LocalCredentials, RequestContext
from app.services.email import EmailSender, get_email_sender, render_template
from app.services.oauth import GoogleIdentityProvider, get_identity_provider
from app.utils.time import to_epoch_ms

router = APIRouter(tags=["auth"])
log = logging.getLogger(__name__)

OAUTH_NONCE_COOKIE = "oauth_nonce"

FORGOT_PASSWORD_MESSAGE = "If the account exists, a password reset email has been sent"


def session_response(result: auth_service.AuthResult) -> SessionResponse:
    return SessionResponse(
        is_email_verified=result.user.is_email_verified,
        auth_strategy=result.user.auth_strategy,
        csrf_token=result.session.csrf_token,
    )


def _message_page(status_code: int, *, type: str, title: str, summary: str,
                  details: Optional[str] = None) -> HTMLResponse:
    html = render_template(
        "message.html",
        type=type,
        title=title,
        summary=summary,
        details=details,
        button_text="Go to login page",
        button_url=f"{settings.FRONTEND_URL}/login",
    )
    return HTMLResponse(content=html, status_code=status_code)


# === 狀態查詢 ===
@router.get("/check-status", response_model=AuthStatus)
async def check_status(ctx: RequestContext = Depends(get_request_context)):
    """前端初始化時呼叫；已登入時順便回傳 CSRF token"""
    if not ctx.is_authenticated:
        return AuthStatus(is_authenticated=False, is_email_verified=False)
    return AuthStatus(
        is_authenticated=True,
        is_email_verified=ctx.user.is_email_verified,
        auth_strategy=ctx.user.auth_strategy,
        csrf_token=ctx.csrf_token,
    )


# === 本地登入 ===
@router.post("/login", response_model=SessionResponse)
async def login(
    payload: LoginRequest,
    response: Response,
    ctx: RequestContext = Depends(require_anonymous),
    db: AsyncSession = Depends(get_db),
):
    result = await auth_service.login(
        db, ctx, LocalCredentials(email=payload.email, password=payload.password),
    )
    session_service.set_session_cookies(response, result.session)
    return session_response(result)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    ctx: RequestContext = Depends(require_authenticated),
    db: AsyncSession = Depends(get_db),
):
    await auth_service.logout(db, ctx)
    session_service.clear_session_cookies(response)
    return MessageResponse(message="Logged out")


# === Email 驗證 ===
@router.get("/verify-email/{token}", response_class=HTMLResponse)
async def verify_email(token: str, db: AsyncSession = Depends(get_db)):
    """信中連結直接打開，因此回傳 HTML 頁面而非 JSON"""
    invalid = _message_page(
        status.HTTP_400_BAD_REQUEST,
        type="error",
        title="Invalid verification link",
        summary="The verification link is invalid or may have expired. "
                "Please log in and request a new verification email.",
    )
    if len(token) != TOKEN_LENGTH:
        return invalid

    try:
        user = await auth_service.verify_email(db, token)
    except SQLAlchemyError:
        log.exception("Email verification failed")
        return _message_page(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            type="error",
            title="Something went wrong",
            summary="We could not verify your email right now. Please try again later.",
        )
    if user is None:
        return invalid
    return _message_page(
        status.HTTP_200_OK,
        type="success",
        title="Email verified",
        summary="Your email has been verified. You can now use all features.",
    )


@router.post("/send-verification-email", response_model=VerificationEmailSent)
async def send_verification_email(
    ctx: RequestContext = Depends(require_authenticated),
    db: AsyncSession = Depends(get_db),
    email_sender: EmailSender = Depends(get_email_sender),
):
    token = await auth_service.resend_verification(db, ctx, email_sender)
    return VerificationEmailSent(token_expire_timestamp=to_epoch_ms(token.expire))


# === 忘記密碼 / 重設密碼 ===
@router.post("/forgot-password", response_model=MessageResponse,
             status_code=status.HTTP_202_ACCEPTED)
async def forgot_password(
    payload: ForgotPasswordRequest,
    ctx: RequestContext = Depends(require_anonymous),
    db: AsyncSession = Depends(get_db),
    email_sender: EmailSender = Depends(get_email_sender),
):
    # 不論帳號是否存在都回相同內容
    await auth_service.request_password_reset(db, ctx, payload.email, email_sender)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    payload: ResetPasswordRequest,
    ctx: RequestContext = Depends(require_anonymous),
    db: AsyncSession = Depends(get_db),
):
    await auth_service.reset_password_with_token(
        db, ctx, token=payload.token, new_password=payload.new_password,
    )
    return MessageResponse(message="Password has been reset. Please log in again.")


# === Google OAuth ===
@router.get("/google")
async def google_login(
    ctx: RequestContext = Depends(require_anonymous),
    provider: GoogleIdentityProvider = Depends(get_identity_provider),
):
    """導向 Google 同意畫面；state 綁定瀏覽器 nonce cookie 防 CSRF"""
    nonce = generate_secret()
    state = create_oauth_state(nonce)
    redirect = RedirectResponse(provider.authorization_url(state), status_code=status.HTTP_302_FOUND)
    redirect.set_cookie(
        OAUTH_NONCE_COOKIE,
        nonce,
        max_age=settings.OAUTH_STATE_TTL_SEC,
        httponly=True,
        secure=settings.cookie_secure,
        # Google 導回是跨站的 top-level GET，Strict 會收不到 cookie
        samesite="lax",
        path=f"{settings.API_V1_PREFIX}/auth/google",
    )
    return redirect


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    ctx: RequestContext = Depends(require_anonymous),
    db: AsyncSession = Depends(get_db),
    provider: GoogleIdentityProvider = Depends(get_identity_provider),
):
    if error:
        log.info("Google OAuth denied by user: %s", error)
        raise BadRequestError("Google sign-in was cancelled")
    if not code:
        raise BadRequestError("Missing authorization code")
    try:
        decode_oauth_state(state or "", request.cookies.get(OAUTH_NONCE_COOKIE))
    except JWTError as e:
        log.warning("Rejected Google OAuth callback: %s", e)
        raise BadRequestError("Invalid OAuth state") from e

    profile = await provider.exchange_code(code)
    result = await auth_service.login(db, ctx, GoogleIdentity(profile=profile))

    redirect = RedirectResponse(settings.FRONTEND_URL, status_code=status.HTTP_302_FOUND)
    session_service.set_session_cookies(redirect, result.session)
    redirect.delete_cookie(OAUTH_NONCE_COOKIE, path=f"{settings.API_V1_PREFIX}/auth/google")
    return redirect
