# app/services/users.py
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.users import User
from app.schemas.user import Statistics
from app.utils.time import to_epoch_ms, utcnow


async def update_profile(db: AsyncSession, user_id: int, *, name: Optional[str] = None) -> User:
    if name is not None:
        await db.execute(update(User).where(User.id == user_id).values(name=name))
        await db.commit()
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def list_users(db: AsyncSession) -> List[User]:
    # 之後若要分頁再加 limit / offset
    result = await db.execute(select(User).order_by(User.created_at, User.id))
    return list(result.scalars().all())


async def count_users(db: AsyncSession) -> int:
    result = await db.execute(select(func.count(User.id)))
    return int(result.scalar_one())


async def count_active_users_since(db: AsyncSession, since: datetime) -> int:
    result = await db.execute(select(func.count(User.id)).where(User.last_active_at >= since))
    return int(result.scalar_one())


async def get_statistics(db: AsyncSession, *, now: Optional[datetime] = None) -> Statistics:
    """
    - total_users：所有註冊人數
    - active_users_today：過去 24 小時內有活動的人數
    - average_active_users_last_7_days：過去 7 天活躍人數 / 7（取到小數點後兩位）
    """
    now = now or utcnow()
    today_begin = now - timedelta(days=1)
    seven_days_ago = now - timedelta(days=7)

    total = await count_users(db)
    active_today = await count_active_users_since(db, today_begin)
    active_7d = await count_active_users_since(db, seven_days_ago)

    return Statistics(
        today_begin_timestamp=to_epoch_ms(today_begin),
        seven_days_ago_timestamp=to_epoch_ms(seven_days_ago),
        total_users=total,
        active_users_today=active_today,
        average_active_users_last_7_days=round(active_7d / 7, 2),
    )
