# app/services/sessions.py
"""
伺服器端 session 與 double-submit CSRF。

- session id 以 HttpOnly + SameSite=Strict cookie 發送，前端 JS 讀不到
- CSRF token 由 session 的 csrf_secret 衍生，同時放在可讀 cookie 與 response body
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Response
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.security import generate_secret, generate_token, hash_token, make_csrf_token
from app.models.user_sessions import UserSession
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class EstablishedSession:
    """login / signup 後回傳：原始 session id 只在這裡出現一次"""
    session_id: str
    csrf_token: str
    record: UserSession


async def create_session(db: AsyncSession, user_id: int) -> EstablishedSession:
    session_id = generate_token()
    secret = generate_secret()
    now = utcnow()
    record = UserSession(
        sid_hash=hash_token(session_id),
        user_id=user_id,
        csrf_secret=secret,
        created_at=now,
        expire=now + timedelta(seconds=settings.SESSION_TTL_SEC),
    )
    db.add(record)
    await db.commit()
    logger.info("Session established for user %s", user_id)
    return EstablishedSession(session_id=session_id, csrf_token=make_csrf_token(secret), record=record)


async def load_session(db: AsyncSession, session_id: Optional[str],
                       *, now: Optional[datetime] = None) -> Optional[UserSession]:
    """
    依 cookie 取得 session；過期的順手刪除。
    有效時延長到期時間（閒置 TTL）。
    """
    if not session_id:
        return None
    now = now or utcnow()
    record = await db.get(UserSession, hash_token(session_id))
    if record is None:
        return None
    if record.expire <= now:
        await db.delete(record)
        await db.commit()
        logger.info("Expired session dropped for user %s", record.user_id)
        return None
    record.expire = now + timedelta(seconds=settings.SESSION_TTL_SEC)
    await db.commit()
    return record


async def destroy_session(db: AsyncSession, record: UserSession) -> None:
    await db.delete(record)
    await db.commit()
    logger.info("Session destroyed for user %s", record.user_id)


async def destroy_all_for_user(db: AsyncSession, user_id: int) -> int:
    res = await db.execute(delete(UserSession).where(UserSession.user_id == user_id))
    await db.commit()
    return res.rowcount or 0


async def delete_expired_sessions(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """GC 用：刪除已過期的 session。"""
    res = await db.execute(delete(UserSession).where(UserSession.expire < (now or utcnow())))
    await db.commit()
    return res.rowcount or 0


async def count_sessions_for_user(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count(UserSession.sid_hash)).where(UserSession.user_id == user_id)
    )
    return int(result.scalar_one())


# === Cookies ===
def set_session_cookies(response: Response, established: EstablishedSession) -> None:
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        established.session_id,
        max_age=settings.SESSION_TTL_SEC,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )
    set_csrf_cookie(response, established.csrf_token)


def set_csrf_cookie(response: Response, csrf_token: str) -> None:
    # 前端需讀取這個值並放進 header，所以不設 httponly
    response.set_cookie(
        settings.CSRF_COOKIE_NAME,
        csrf_token,
        max_age=settings.SESSION_TTL_SEC,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def clear_session_cookies(response: Response) -> None:
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    response.delete_cookie(settings.CSRF_COOKIE_NAME, path="/")
