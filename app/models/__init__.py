# app/models/__init__.py
# 匯入所有 model，讓 Base.metadata 完整（Alembic / 測試 create_all 用）
from app.models.base import Base
from app.models.users import AuthStrategy, User
from app.models.tokens import Token, TokenPurpose
from app.models.user_sessions import UserSession

__all__ = ["Base", "AuthStrategy", "User", "Token", "TokenPurpose", "UserSession"]
