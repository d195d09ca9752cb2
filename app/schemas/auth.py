from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from app.models.users import AuthStrategy
from app.schemas.user import PASSWORD_MAX, PASSWORD_MIN, UserProfile, check_new_password


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class SessionResponse(BaseModel):
    """login / signup / OAuth 共用的回應格式"""
    is_email_verified: bool
    auth_strategy: AuthStrategy
    csrf_token: str


class SignupResponse(SessionResponse):
    user_profile: UserProfile
    token_expire_timestamp: int  # epoch ms


class AuthStatus(BaseModel):
    is_authenticated: bool
    is_email_verified: bool
    auth_strategy: Optional[AuthStrategy] = None
    csrf_token: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class VerificationEmailSent(BaseModel):
    token_expire_timestamp: int  # epoch ms


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=64)
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
