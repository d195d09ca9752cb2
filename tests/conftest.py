# tests/conftest.py
import asyncio
import os
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# ---- 測試期環境變數（先於 app 載入）----
os.environ.setdefault("ENV", "test")
os.environ.setdefault("TOKEN_GC_ENABLED", "false")

from app.main import app  # noqa: E402
from app.core.errors import EmailDeliveryError, IdentityProviderError  # noqa: E402
from app.db.session import AsyncSessionLocal, engine  # noqa: E402
from app.models import Base  # noqa: E402
from app.services.email import EmailMessage, EmailSender, get_email_sender  # noqa: E402
from app.services.oauth import ExternalProfile, GoogleIdentityProvider, get_identity_provider  # noqa: E402


class FakeEmailSender(EmailSender):
    """不寄信，只把訊息收進 outbox 讓測試讀取連結"""

    def __init__(self) -> None:
        super().__init__(smtp_host=None, from_email="noreply@example.com")
        self.outbox: List[EmailMessage] = []
        self.fail = False

    async def send(self, message: EmailMessage) -> None:
        if self.fail:
            raise EmailDeliveryError("SMTP unavailable (fake)")
        self.outbox.append(message)

    def last_to(self, email: str) -> Optional[EmailMessage]:
        for message in reversed(self.outbox):
            if message.to == email:
                return message
        return None


class FakeIdentityProvider(GoogleIdentityProvider):
    """exchange_code 直接回傳測試指定的 profile"""

    def __init__(self) -> None:
        super().__init__(client_id="test-client-id", client_secret="test-client-secret")
        self.profile: Optional[ExternalProfile] = None
        self.fail = False
        self.codes: List[str] = []

    async def exchange_code(self, code: str) -> ExternalProfile:
        self.codes.append(code)
        if self.fail:
            raise IdentityProviderError("Google unreachable (fake)")
        return self.profile


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    """測試前自動 create_all，測試後 drop_all（用 asyncio.run 避免事件圈衝突）。"""
    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    async def drop_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    asyncio.run(init_models())
    yield
    asyncio.run(drop_models())


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def make_client(email_sender, identity_provider):
    """
    產生獨立 cookie jar 的 client（模擬不同瀏覽器）。
    外部服務以 dependency_overrides 換成假的實作。
    """
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    app.dependency_overrides[get_identity_provider] = lambda: identity_provider

    def _make() -> AsyncClient:
        transport = ASGITransport(app=app)
        return AsyncClient(transport=transport, base_url="http://testserver")

    yield _make
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(make_client):
    """使用 ASGITransport 直接掛載 app，不需啟動伺服器。"""
    async with make_client() as ac:
        yield ac


@pytest_asyncio.fixture
async def db():
    """直接操作 DB 的 session（service 層測試用），結束後總是關閉"""
    session = AsyncSessionLocal()
    try:
        yield session
    finally:
        await session.close()
