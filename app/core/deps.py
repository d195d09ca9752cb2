# app/core/deps.py
"""
Session & CSRF guard。

get_request_context 由 session cookie 建立 RequestContext；
其餘依賴在進入 handler 前檢查認證狀態與 CSRF。
"""
import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthorizationError
from app.db.session import get_db
from app.models.users import AuthStrategy, User
from app.services import auth as auth_service
from app.services import sessions as session_service
from app.services.auth import RequestContext

logger = logging.getLogger(__name__)

# 會改變狀態的 HTTP 方法才需要 CSRF token
CSRF_PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> RequestContext:
    """
    讀取 session cookie：
      1️⃣ 沒帶 / 不存在 / 已過期 → 匿名
      2️⃣ session 對應的使用者已不存在 → 刪除 session，視為匿名
      3️⃣ 有效 → 帶入 user 並延長 session
    """
    sid = request.cookies.get(settings.SESSION_COOKIE_NAME)
    record = await session_service.load_session(db, sid)
    if record is None:
        return RequestContext()

    user = await db.get(User, record.user_id)
    if user is None:
        logger.warning("Session refers to missing user %s; dropping it", record.user_id)
        await session_service.destroy_session(db, record)
        return RequestContext()
    return RequestContext(session=record, user=user)


async def csrf_protect(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    """
    Double-submit CSRF：header 與 cookie 的 token 必須一致，且必須是此 session 衍生出的值。
    未登入或唯讀請求不檢查。
    """
    if request.method.upper() not in CSRF_PROTECTED_METHODS:
        return ctx
    header_token = request.headers.get(settings.CSRF_HEADER_NAME)
    cookie_token = request.cookies.get(settings.CSRF_COOKIE_NAME)
    if not ctx.csrf_ok(header_token, cookie_token):
        logger.warning("Invalid CSRF token on %s %s", request.method, request.url.path)
        raise AuthorizationError("Invalid CSRF token")
    return ctx


# === 認證狀態守門 ===
async def require_anonymous(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    auth_service.ensure_anonymous(ctx)
    return ctx


async def require_authenticated(ctx: RequestContext = Depends(csrf_protect)) -> RequestContext:
    auth_service.ensure_authenticated(ctx)
    return ctx


async def require_verified(ctx: RequestContext = Depends(require_authenticated)) -> RequestContext:
    auth_service.ensure_verified(ctx)
    return ctx


async def require_local_user(ctx: RequestContext = Depends(require_authenticated)) -> RequestContext:
    auth_service.ensure_auth_strategy(ctx.user, AuthStrategy.LOCAL)
    return ctx
