# app/core/security.py
import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt, JWTError
from passlib.context import CryptContext

from app.core.config import settings

# 33 bytes（264 bits）剛好編成 44 個 base64url 字元，不需要 padding
TOKEN_NUM_BYTES = 33
TOKEN_LENGTH = 44

# === Password Hashing ===
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__ident="2b",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
    # 若密碼超過 72 bytes，不拋錯（與現有流程相容）
    bcrypt__truncate_error=False,
)

def _sanitize_password(p: str) -> bytes:
    # bcrypt 只吃前 72 bytes，避免極長密碼在某些環境報錯
    raw = p.encode("utf-8") if isinstance(p, str) else p
    return raw[:72]

def hash_password(plain: str) -> str:
    return pwd_context.hash(_sanitize_password(plain))

def verify_password(plain: str, password_hash: str) -> bool:
    return pwd_context.verify(_sanitize_password(plain), password_hash)


# === Random Tokens ===
def generate_token() -> str:
    """
    產生單次使用 token：>=256 bits 亂數，URL-safe、無 padding，長度固定 44。
    """
    raw = secrets.token_bytes(TOKEN_NUM_BYTES)
    encoded = base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    return encoded

def hash_token(token: str) -> str:
    # DB 只存 hash，避免 DB 外洩直接拿到 session id
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

def generate_secret() -> str:
    return secrets.token_urlsafe(32)


# === CSRF (double submit) ===
def make_csrf_token(session_secret: str) -> str:
    """
    由 session 內的 csrf_secret 衍生出 CSRF token。
    同一個 session 內 token 固定，cookie 與 response body 會拿到同一個值。
    """
    return hmac.new(
        settings.CSRF_SECRET.encode("utf-8"),
        session_secret.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

def csrf_tokens_match(session_secret: str, header_token: Optional[str],
                      cookie_token: Optional[str]) -> bool:
    if not header_token or not cookie_token:
        return False
    if not hmac.compare_digest(header_token, cookie_token):
        return False
    return hmac.compare_digest(header_token, make_csrf_token(session_secret))


# === OAuth state（JWT 簽章，短時效） ===
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)

def create_oauth_state(nonce: str, redirect_to: Optional[str] = None) -> str:
    claims: Dict[str, Any] = {
        "type": "oauth_state",
        "nonce": nonce,
        "iat": int(_now_utc().timestamp()),
        "exp": _now_utc() + timedelta(seconds=settings.OAUTH_STATE_TTL_SEC),
    }
    if redirect_to:
        claims["redirect_to"] = redirect_to
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

def decode_oauth_state(state: str, nonce: Optional[str]) -> Dict[str, Any]:
    """
    驗證 state 簽章、時效，以及與瀏覽器 cookie 的 nonce 是否一致。
    任何不符都拋 JWTError。
    """
    payload = jwt.decode(state, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != "oauth_state":
        raise JWTError("Invalid state type")
    if not nonce or not hmac.compare_digest(str(payload.get("nonce", "")), nonce):
        raise JWTError("State nonce mismatch")
    return payload
