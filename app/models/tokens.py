# app/models/tokens.py
import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.security import TOKEN_LENGTH
from app.models.base import Base
from app.utils.time import utcnow


class TokenPurpose(str, enum.Enum):
    RESET_PASSWORD = "resetPassword"
    VERIFY_EMAIL = "verifyEmail"


class Token(Base):
    """單次使用、限定用途的 token（驗證信 / 重設密碼）"""

    __tablename__ = "tokens"

    token: Mapped[str] = mapped_column(String(TOKEN_LENGTH), primary_key=True)
    purpose: Mapped[TokenPurpose] = mapped_column(
        Enum(TokenPurpose, name="token_purpose", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    # 使用者被刪除時一併刪除
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expire: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    user: Mapped["User"] = relationship(back_populates="tokens")  # noqa: F821

    __table_args__ = (
        Index("ix_tokens_expire", "expire"),
        Index("ix_tokens_user_id_purpose", "user_id", "purpose"),
    )

    def is_valid_for(self, purpose: TokenPurpose, now: datetime) -> bool:
        return self.purpose == purpose and now < self.expire
