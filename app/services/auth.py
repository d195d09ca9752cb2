# app/services/auth.py
"""
認證狀態機。

每個 request 的狀態：
    ANONYMOUS ──signup──────────────▶ AUTHENTICATED_UNVERIFIED
    ANONYMOUS ──login(local)────────▶ AUTHENTICATED_{UNVERIFIED|VERIFIED}
    ANONYMOUS ──login(Google)───────▶ AUTHENTICATED_VERIFIED
    AUTHENTICATED_* ──logout────────▶ ANONYMOUS
    AUTHENTICATED_UNVERIFIED ──verify-email──▶ AUTHENTICATED_VERIFIED

身分驗證依 auth_strategy 分派到對應的 verifier（LOCAL / GOOGLE_OAUTH）。
"""
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    DuplicateEmailOrIdentity,
    EmailDeliveryError,
    InvalidCredentials,
)
from app.core.security import csrf_tokens_match, hash_password, make_csrf_token
from app.models.tokens import Token, TokenPurpose
from app.models.user_sessions import UserSession
from app.models.users import MAX_NAME_LENGTH, AuthStrategy, User
from app.services import credential_store, sessions, tokens
from app.services.email import EmailSender, build_reset_password_email, build_verification_email
from app.services.oauth import ExternalProfile

logger = logging.getLogger(__name__)


class AuthState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED_UNVERIFIED = "authenticated_unverified"
    AUTHENTICATED_VERIFIED = "authenticated_verified"


def auth_state_of(user: Optional[User]) -> AuthState:
    if user is None:
        return AuthState.ANONYMOUS
    if user.is_email_verified:
        return AuthState.AUTHENTICATED_VERIFIED
    return AuthState.AUTHENTICATED_UNVERIFIED


@dataclass
class RequestContext:
    """
    每個 request 的認證上下文，由 deps.get_request_context 建立後傳給 handler。
    不修改 Request 物件本身。
    """
    session: Optional[UserSession] = None
    user: Optional[User] = None

    @property
    def state(self) -> AuthState:
        return auth_state_of(self.user)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def csrf_token(self) -> Optional[str]:
        if self.session is None:
            return None
        return make_csrf_token(self.session.csrf_secret)

    def csrf_ok(self, header_token: Optional[str], cookie_token: Optional[str]) -> bool:
        if self.session is None:
            return True  # 未登入不需 CSRF（後續的認證檢查會擋下）
        return csrf_tokens_match(self.session.csrf_secret, header_token, cookie_token)


# === Guards ===
def ensure_anonymous(ctx: RequestContext) -> None:
    if ctx.is_authenticated:
        raise AuthorizationError("Forbidden: Action only allowed when not logged in")


def ensure_authenticated(ctx: RequestContext) -> User:
    if not ctx.is_authenticated:
        raise AuthenticationError("Unauthorized: Not logged in")
    return ctx.user


def ensure_verified(ctx: RequestContext) -> User:
    user = ensure_authenticated(ctx)
    if ctx.state != AuthState.AUTHENTICATED_VERIFIED:
        raise AuthorizationError("Forbidden: Email not verified")
    return user


def ensure_unverified(ctx: RequestContext) -> User:
    user = ensure_authenticated(ctx)
    if ctx.state == AuthState.AUTHENTICATED_VERIFIED:
        raise ConflictError("Conflict: Email already verified")
    return user


def ensure_auth_strategy(user: User, strategy: AuthStrategy) -> None:
    if user.auth_strategy != strategy:
        raise AuthorizationError(
            "Forbidden: Action not allowed for the current authentication strategy "
            f"({user.auth_strategy.value})"
        )


# === Identity verification（依 strategy 分派） ===
@dataclass
class LocalCredentials:
    email: str
    password: str
    strategy: AuthStrategy = AuthStrategy.LOCAL


@dataclass
class GoogleIdentity:
    profile: ExternalProfile
    strategy: AuthStrategy = AuthStrategy.GOOGLE_OAUTH


Credentials = Union[LocalCredentials, GoogleIdentity]


async def _verify_local(db: AsyncSession, cred: LocalCredentials) -> User:
    user = await credential_store.find_by_email(db, cred.email)
    # 三種失敗回同一個錯誤，log 才記錄真正原因
    if user is None:
        logger.info("Local login failed: account not found")
        raise InvalidCredentials()
    if user.auth_strategy != AuthStrategy.LOCAL:
        logger.info("Local login failed: user %s uses %s", user.id, user.auth_strategy.value)
        raise InvalidCredentials()
    if not credential_store.verify_password(user, cred.password):
        logger.info("Local login failed: incorrect password for user %s", user.id)
        raise InvalidCredentials()
    return user


async def _verify_google(db: AsyncSession, cred: GoogleIdentity) -> User:
    profile = cred.profile
    user = await credential_store.find_by_external_identity(
        db, AuthStrategy.GOOGLE_OAUTH, profile.external_id,
    )
    if user is not None:
        return user

    # 首次登入：建立帳號
    if not profile.email:
        raise BadRequestError("Google account has no email address")
    if await credential_store.find_by_email(db, profile.email) is not None:
        raise ConflictError("Email already registered with another sign-in method")
    try:
        return await credential_store.create_user(
            db,
            name=profile.display_name[:MAX_NAME_LENGTH],
            email=profile.email,
            auth_strategy=AuthStrategy.GOOGLE_OAUTH,
            external_id=profile.external_id,
        )
    except DuplicateEmailOrIdentity as e:
        raise ConflictError("Email already registered with another sign-in method") from e


_VERIFIERS: Dict[AuthStrategy, Callable[[AsyncSession, Credentials], Awaitable[User]]] = {
    AuthStrategy.LOCAL: _verify_local,
    AuthStrategy.GOOGLE_OAUTH: _verify_google,
}


async def authenticate(db: AsyncSession, credentials: Credentials) -> User:
    verifier = _VERIFIERS.get(credentials.strategy)
    if verifier is None:
        raise AuthenticationError("Unsupported authentication strategy")
    return await verifier(db, credentials)


# === Transitions ===
@dataclass
class AuthResult:
    user: User
    session: sessions.EstablishedSession

    @property
    def state(self) -> AuthState:
        return auth_state_of(self.user)


async def login(db: AsyncSession, ctx: RequestContext, credentials: Credentials) -> AuthResult:
    ensure_anonymous(ctx)
    user = await authenticate(db, credentials)
    if user.auth_strategy == AuthStrategy.LOCAL:
        user = await credential_store.record_activity(db, user.id, is_login=True)
    established = await sessions.create_session(db, user.id)
    logger.info("User %s logged in (%s)", user.id, user.auth_strategy.value)
    return AuthResult(user=user, session=established)


async def _issue_for(
    db: AsyncSession, user: User, purpose: TokenPurpose, ttl_seconds: int,
) -> Tuple[User, Token]:
    # issue() 碰撞重試時會 rollback，已載入的 user 會過期，因此重新讀取
    user_id = user.id
    token = await tokens.issue(db, user_id, purpose, ttl_seconds)
    return await credential_store.find_by_id(db, user_id), token


@dataclass
class SignupResult(AuthResult):
    token: Optional[Token] = None


async def signup(
    db: AsyncSession,
    ctx: RequestContext,
    *,
    name: str,
    email: str,
    password: str,
    email_sender: EmailSender,
) -> SignupResult:
    """
    建立本地帳號 → 發行驗證 token → 寄驗證信 → 建立 session。
    寄信失敗會拋 EmailDeliveryError（帳號已建立，可登入後重寄）。
    """
    ensure_anonymous(ctx)
    user = await credential_store.create_user(
        db, name=name, email=email, auth_strategy=AuthStrategy.LOCAL, password=password,
    )
    user, token = await _issue_for(db, user, TokenPurpose.VERIFY_EMAIL, settings.VERIFY_EMAIL_TOKEN_TTL_SEC)
    await email_sender.send(build_verification_email(user, token))
    user = await credential_store.record_activity(db, user.id, is_login=True)
    established = await sessions.create_session(db, user.id)
    return SignupResult(user=user, session=established, token=token)


async def logout(db: AsyncSession, ctx: RequestContext) -> None:
    user = ensure_authenticated(ctx)
    if ctx.session is not None:
        await sessions.destroy_session(db, ctx.session)
    logger.info("User %s logged out", user.id)


async def verify_email(db: AsyncSession, token: str) -> Optional[User]:
    """
    驗證 email：token 無效回 None；有效則在同一交易內標記已驗證並刪除 token。
    """
    try:
        user_id = await tokens.claim(db, token, TokenPurpose.VERIFY_EMAIL)
        if user_id is not None:
            await db.execute(update(User).where(User.id == user_id).values(is_email_verified=True))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    if user_id is None:
        logger.warning("Attempt to use invalid email verification token")
        return None
    logger.info("Email verified for user %s", user_id)
    return await credential_store.find_by_id(db, user_id)


async def resend_verification(
    db: AsyncSession, ctx: RequestContext, email_sender: EmailSender,
) -> Token:
    user = ensure_authenticated(ctx)
    ensure_auth_strategy(user, AuthStrategy.LOCAL)
    ensure_unverified(ctx)
    # 舊連結全部作廢，只留最新一個
    await tokens.delete_all_for_purpose(db, user.id, TokenPurpose.VERIFY_EMAIL)
    user, token = await _issue_for(db, user, TokenPurpose.VERIFY_EMAIL, settings.VERIFY_EMAIL_TOKEN_TTL_SEC)
    await email_sender.send(build_verification_email(user, token))
    return token


async def change_password(
    db: AsyncSession, ctx: RequestContext, *, old_password: str, new_password: str,
) -> None:
    user = ensure_authenticated(ctx)
    ensure_auth_strategy(user, AuthStrategy.LOCAL)
    if not credential_store.verify_password(user, old_password):
        raise AuthenticationError("Invalid password")
    await credential_store.update_password(db, user.id, new_password)


async def request_password_reset(
    db: AsyncSession, ctx: RequestContext, email: str, email_sender: EmailSender,
) -> None:
    """
    忘記密碼：不論帳號是否存在都不回報，避免帳號探測。
    """
    ensure_anonymous(ctx)
    user = await credential_store.find_by_email(db, email)
    if user is None or user.auth_strategy != AuthStrategy.LOCAL:
        logger.info("Password reset requested for unknown or non-local account")
        return
    await tokens.delete_all_for_purpose(db, user.id, TokenPurpose.RESET_PASSWORD)
    user, token = await _issue_for(db, user, TokenPurpose.RESET_PASSWORD, settings.RESET_PASSWORD_TOKEN_TTL_SEC)
    try:
        await email_sender.send(build_reset_password_email(user, token))
    except EmailDeliveryError:
        # 回應必須和帳號不存在時一致，寄信失敗只記 log
        logger.exception("Failed to send password reset email to user %s", user.id)


async def reset_password_with_token(
    db: AsyncSession, ctx: RequestContext, *, token: str, new_password: str,
) -> User:
    """以重設 token 更新密碼；成功後 token 刪除，且該使用者所有 session 失效。"""
    ensure_anonymous(ctx)
    password_hash = hash_password(new_password)
    try:
        user_id = await tokens.claim(db, token, TokenPurpose.RESET_PASSWORD)
        if user_id is not None:
            await db.execute(
                update(User).where(User.id == user_id).values(password_hash=password_hash)
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    if user_id is None:
        raise BadRequestError("Invalid or expired password reset token")
    await sessions.destroy_all_for_user(db, user_id)
    logger.info("Password reset via token for user %s", user_id)
    return await credential_store.find_by_id(db, user_id)
