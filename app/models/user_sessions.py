# app/models/user_sessions.py
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.utils.time import utcnow


class UserSession(Base):
    """
    伺服器端 session：cookie 只放隨機 session id，DB 只存其 sha256。
    使用者被刪除時 cascade 刪除，不會留下仍有效的 session。
    """

    __tablename__ = "user_sessions"

    sid_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    # 用來衍生 double-submit CSRF token
    csrf_secret: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expire: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    user: Mapped["User"] = relationship(back_populates="sessions")  # noqa: F821

    __table_args__ = (
        Index("ix_user_sessions_expire", "expire"),
    )
