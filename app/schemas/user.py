# app/schemas/user.py
import re
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from app.models.users import AuthStrategy

NAME_MAX = 100
EMAIL_MAX = 256
PASSWORD_MIN = 8
PASSWORD_MAX = 128


def check_new_password(password: str) -> str:
    """新密碼需包含大寫、小寫、數字與特殊字元"""
    if not re.search(r"[A-Z]", password):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        raise ValueError("Password must contain at least one number")
    if not re.search(r"[\W_]", password):
        raise ValueError("Password must contain at least one special character")
    return password


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=NAME_MAX)
    email: EmailStr
    # 僅用於建立帳號的輸入，不會在輸出 schema 中出現
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    confirm_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("email")
    @classmethod
    def _email_length(cls, v: str) -> str:
        if len(v) > EMAIL_MAX:
            raise ValueError(f"Email must be at most {EMAIL_MAX} characters")
        return v

    @field_validator("password")
    @classmethod
    def _password_strength(cls, v: str) -> str:
        return check_new_password(v)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Password and confirm password do not match")
        return self


class UserProfile(BaseModel):
    id: int
    name: str
    email: str
    auth_strategy: AuthStrategy
    is_email_verified: bool
    created_at: datetime
    last_active_at: Optional[datetime] = None
    login_count: int

    # Pydantic v2：允許從 ORM 物件轉模型
    model_config = ConfigDict(from_attributes=True)


class UserProfileResponse(BaseModel):
    user_profile: UserProfile


class UserProfileListResponse(BaseModel):
    user_profile_list: List[UserProfile]


# 部分更新使用者資料；密碼走專用「修改密碼」API
class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=NAME_MAX)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    confirm_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("new_password")
    @classmethod
    def _password_strength(cls, v: str) -> str:
        return check_new_password(v)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("New password and confirm password do not match")
        return self


class Statistics(BaseModel):
    today_begin_timestamp: int
    seven_days_ago_timestamp: int
    total_users: int
    active_users_today: int
    average_active_users_last_7_days: float
