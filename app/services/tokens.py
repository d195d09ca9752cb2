# app/services/tokens.py
"""
單次使用 token 的生命週期：發行 → 有效 → {使用後刪除 | 過期後由 GC 刪除}。
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import TokenGenerationFailed
from app.core.security import generate_token
from app.models.tokens import Token, TokenPurpose
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

# 主鍵碰撞時最多嘗試次數（機率極低，但不無限重試）
MAX_ISSUE_ATTEMPTS = 3


async def _token_exists(db: AsyncSession, value: str) -> bool:
    res = await db.execute(select(Token.token).where(Token.token == value))
    return res.scalar_one_or_none() is not None


async def issue(
    db: AsyncSession,
    user_id: int,
    purpose: TokenPurpose,
    ttl_seconds: int,
    *,
    token_factory: Callable[[], str] = generate_token,
) -> Token:
    """發行 token；主鍵衝突時重試，超過上限拋 TokenGenerationFailed。"""
    last_error: Optional[Exception] = None
    for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
        value = token_factory()
        now = utcnow()
        try:
            await db.execute(
                insert(Token).values(
                    token=value,
                    purpose=purpose,
                    user_id=user_id,
                    created_at=now,
                    expire=now + timedelta(seconds=ttl_seconds),
                )
            )
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            # 只有 token 主鍵衝突才重試；外鍵等其他違反直接往上拋
            if not await _token_exists(db, value):
                raise
            last_error = e
            if attempt < MAX_ISSUE_ATTEMPTS:
                logger.warning("Retrying to generate unique token (attempt %s): %s", attempt, e.orig)
            continue

        record = await db.get(Token, value)
        logger.info("Token issued for user %s (purpose=%s)", user_id, purpose.value)
        return record

    raise TokenGenerationFailed(
        f"Failed to generate unique token after {MAX_ISSUE_ATTEMPTS} attempts",
        cause=last_error,
    )


async def validate(
    db: AsyncSession,
    token: str,
    expected_purpose: TokenPurpose,
    *,
    now: Optional[datetime] = None,
) -> Optional[Token]:
    """
    回傳有效的 token，否則 None（不存在 / 用途不符 / 已過期）。
    None 是正常的「連結無效」結果，不是錯誤。
    """
    if not token:
        return None
    result = await db.execute(select(Token).where(Token.token == token))
    record = result.scalar_one_or_none()
    if record is None:
        return None
    if not record.is_valid_for(expected_purpose, now or utcnow()):
        return None
    return record


async def consume(db: AsyncSession, token: str, *, commit: bool = True) -> bool:
    """刪除 token；不存在也不算錯誤，回傳是否真的刪到。"""
    res = await db.execute(delete(Token).where(Token.token == token))
    if commit:
        await db.commit()
    return (res.rowcount or 0) == 1


async def claim(
    db: AsyncSession,
    token: str,
    purpose: TokenPurpose,
    *,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """
    在呼叫端的交易內取用 token，回傳 user_id；無效或已被取用回 None。
    以 DELETE 的 rowcount 判定：同一 token 併發取用時只有一方刪得到。
    不 commit，由呼叫端與後續更新一起提交。
    """
    now = now or utcnow()
    record = await validate(db, token, purpose, now=now)
    if record is None:
        return None
    user_id = record.user_id
    res = await db.execute(
        delete(Token).where(
            Token.token == token,
            Token.purpose == purpose,
            Token.expire > now,
        )
    )
    if res.rowcount != 1:
        logger.warning("Token already used by a concurrent request (user %s)", user_id)
        return None
    return user_id


async def delete_all_for_purpose(db: AsyncSession, user_id: int, purpose: TokenPurpose) -> int:
    """發行新 token 前呼叫，確保同一 (user, purpose) 只有一個有效 token。"""
    res = await db.execute(
        delete(Token).where(Token.user_id == user_id, Token.purpose == purpose)
    )
    await db.commit()
    return res.rowcount or 0


async def delete_expired(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """刪除已過期的 token，回傳刪除數量。"""
    stmt = delete(Token).where(Token.expire < (now or utcnow()))
    res = await db.execute(stmt)
    await db.commit()
    return res.rowcount or 0

