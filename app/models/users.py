# app/models/users.py
import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Enum, Integer, String, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.utils.time import utcnow

MAX_EMAIL_LENGTH = 256
MAX_NAME_LENGTH = 256


class AuthStrategy(str, enum.Enum):
    LOCAL = "local"
    GOOGLE_OAUTH = "googleOAuth"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # 第三方登入（Google）的使用者 ID；本地帳號為 NULL
    external_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    email: Mapped[str] = mapped_column(String(MAX_EMAIL_LENGTH), unique=True, index=True, nullable=False)
    # bcrypt hash 固定 60 字元；第三方登入的帳號沒有密碼
    password_hash: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), nullable=False)
    auth_strategy: Mapped[AuthStrategy] = mapped_column(
        Enum(AuthStrategy, name="auth_strategy", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    is_email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_active_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    login_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tokens: Mapped[List["Token"]] = relationship(  # noqa: F821
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True,
    )
    sessions: Mapped[List["UserSession"]] = relationship(  # noqa: F821
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("auth_strategy", "external_id", name="uq_users_auth_strategy_external_id"),
        CheckConstraint(
            "auth_strategy != 'local' OR password_hash IS NOT NULL",
            name="ck_users_local_has_password",
        ),
        CheckConstraint(
            "auth_strategy = 'local' OR external_id IS NOT NULL",
            name="ck_users_external_has_id",
        ),
        CheckConstraint("login_count >= 0", name="ck_users_login_count_non_negative"),
    )
