# app/services/oauth.py
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from fastapi.concurrency import run_in_threadpool
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from app.core.config import settings
from app.core.errors import IdentityProviderError

logger = logging.getLogger(__name__)


@dataclass
class ExternalProfile:
    """身分提供者回傳的使用者資料；email 可能缺少"""
    external_id: str
    email: Optional[str]
    display_name: str


class GoogleIdentityProvider:
    """
    Google OAuth 2.0（authorization code flow）：
      1. authorization_url() 導向 Google 同意畫面
      2. callback 拿到 code，exchange_code() 在伺服器端換 id_token 並驗證
    """

    def __init__(
        self,
        *,
        client_id: Optional[str] = settings.GOOGLE_CLIENT_ID,
        client_secret: Optional[str] = settings.GOOGLE_CLIENT_SECRET,
        redirect_uri: str = settings.GOOGLE_REDIRECT_URI,
        auth_url: str = settings.GOOGLE_AUTH_URL,
        token_url: str = settings.GOOGLE_TOKEN_URL,
        timeout: float = 10.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_url = auth_url
        self.token_url = token_url
        self.timeout = timeout

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "prompt": "select_account",
        }
        return f"{self.auth_url}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str) -> ExternalProfile:
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.token_url, data=data)
                resp.raise_for_status()
                tokens: Dict[str, Any] = resp.json()
        except httpx.HTTPError as e:
            raise IdentityProviderError("Google token exchange failed", cause=e) from e

        raw_id_token = tokens.get("id_token")
        if not raw_id_token:
            raise IdentityProviderError("Google token response has no id_token")

        try:
            claims = await run_in_threadpool(
                id_token.verify_oauth2_token,
                raw_id_token,
                google_requests.Request(),
                self.client_id,
            )
        except ValueError as e:
            raise IdentityProviderError("Google id_token verification failed", cause=e) from e

        email = claims.get("email") if claims.get("email_verified", True) else None
        profile = ExternalProfile(
            external_id=str(claims["sub"]),
            email=email,
            display_name=claims.get("name") or (email.split("@")[0] if email else "Google user"),
        )
        logger.info("Google identity verified: sub=%s", profile.external_id)
        return profile


_default_provider: Optional[GoogleIdentityProvider] = None


def get_identity_provider() -> GoogleIdentityProvider:
    """FastAPI 依賴；測試以 dependency_overrides 換成假的 provider"""
    global _default_provider
    if _default_provider is None:
        _default_provider = GoogleIdentityProvider()
    return _default_provider
