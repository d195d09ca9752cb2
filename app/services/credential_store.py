# app/services/credential_store.py
"""
使用者帳號的持久化與密碼驗證。

本地帳號（LOCAL）一定有 password_hash；第三方帳號一定有 external_id。
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateEmailOrIdentity, InvalidArgument, NoPasswordSet
from app.core.security import hash_password, verify_password as _verify_hash
from app.models.users import AuthStrategy, User
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def create_user(
    db: AsyncSession,
    *,
    name: str,
    email: str,
    auth_strategy: AuthStrategy,
    password: Optional[str] = None,
    external_id: Optional[str] = None,
) -> User:
    """
    建立使用者。LOCAL 需 password，其餘需 external_id。
    email 或 (auth_strategy, external_id) 重複時拋 DuplicateEmailOrIdentity。
    """
    if auth_strategy == AuthStrategy.LOCAL and not password:
        raise InvalidArgument("Password is required for local strategy")
    if auth_strategy != AuthStrategy.LOCAL and not external_id:
        raise InvalidArgument("External ID is required for non-local strategy")

    user = User(
        name=name,
        email=normalize_email(email),
        password_hash=hash_password(password) if auth_strategy == AuthStrategy.LOCAL else None,
        auth_strategy=auth_strategy,
        external_id=external_id if auth_strategy != AuthStrategy.LOCAL else None,
        # 第三方登入視為已驗證
        is_email_verified=auth_strategy != AuthStrategy.LOCAL,
        created_at=utcnow(),
        last_active_at=None,
        login_count=0,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.info("User creation rejected (duplicate email or identity): %s", e.orig)
        raise DuplicateEmailOrIdentity() from e
    await db.refresh(user)
    logger.info("User created: %s (%s)", user.id, user.auth_strategy.value)
    return user


async def find_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def find_by_id(db: AsyncSession, user_id: int) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_external_identity(
    db: AsyncSession, auth_strategy: AuthStrategy, external_id: str,
) -> Optional[User]:
    if auth_strategy == AuthStrategy.LOCAL:
        raise InvalidArgument("Cannot find external user with local strategy")
    result = await db.execute(
        select(User).where(
            User.auth_strategy == auth_strategy,
            User.external_id == external_id,
        )
    )
    return result.scalar_one_or_none()


def verify_password(user: User, plaintext: str) -> bool:
    if not user.password_hash:
        raise NoPasswordSet(f"User {user.id} password hash is null")
    return _verify_hash(plaintext, user.password_hash)


async def record_activity(db: AsyncSession, user_id: int, is_login: bool = False) -> User:
    """
    更新 last_active_at；登入時 login_count + 1。
    以單一 UPDATE（login_count = login_count + 1）在同一交易內完成，並行登入不會遺失計數。
    """
    values = {"last_active_at": utcnow()}
    if is_login:
        values["login_count"] = User.login_count + 1
    try:
        await db.execute(update(User).where(User.id == user_id).values(**values))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def update_password(db: AsyncSession, user_id: int, new_plaintext: str) -> None:
    await db.execute(
        update(User).where(User.id == user_id).values(password_hash=hash_password(new_plaintext))
    )
    await db.commit()
    logger.info("Password updated for user %s", user_id)
