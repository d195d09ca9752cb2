# tests/test_auth_e2e.py
import time
import uuid

import pytest
from httpx import AsyncClient

from app.core.config import settings
from app.models.users import AuthStrategy
from app.services import credential_store

pytestmark = pytest.mark.asyncio

API = settings.API_V1_PREFIX
PASSWORD = "Str0ng!Pass"
SESSION_KEYS = {"is_email_verified", "auth_strategy", "csrf_token"}


def _email(prefix: str = "e2e") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


async def _signup(client: AsyncClient, email: str, password: str = PASSWORD, name: str = "E2E Tester"):
    return await client.post(
        f"{API}/users/me",
        json={"name": name, "email": email, "password": password, "confirm_password": password},
    )


async def _login(client: AsyncClient, email: str, password: str = PASSWORD):
    return await client.post(f"{API}/auth/login", json={"email": email, "password": password})


def _csrf(r) -> dict:
    return {settings.CSRF_HEADER_NAME: r.json()["csrf_token"]}


def _verification_token(message) -> str:
    # 連結格式：.../auth/verify-email/<token>
    return message.text_body.rsplit("/", 1)[-1].strip()


# --- 狀態查詢 ---
async def test_check_status_anonymous(client: AsyncClient):
    r = await client.get(f"{API}/auth/check-status")
    assert r.status_code == 200
    assert r.json() == {
        "is_authenticated": False,
        "is_email_verified": False,
        "auth_strategy": None,
        "csrf_token": None,
    }


# --- 註冊 ---
async def test_signup_starts_unverified_session(client: AsyncClient, email_sender):
    email = _email()
    before_ms = int(time.time() * 1000)
    r = await _signup(client, email)
    assert r.status_code == 201, r.text
    body = r.json()

    assert body["is_email_verified"] is False
    assert body["auth_strategy"] == "local"
    assert body["csrf_token"]
    profile = body["user_profile"]
    assert profile["email"] == email
    assert profile["login_count"] == 1
    assert "password" not in profile and "password_hash" not in profile
    ttl_ms = settings.VERIFY_EMAIL_TOKEN_TTL_SEC * 1000
    assert before_ms + ttl_ms - 5000 <= body["token_expire_timestamp"] <= before_ms + ttl_ms + 60000

    # session cookie（HttpOnly）與 CSRF cookie 都有設定
    assert client.cookies.get(settings.SESSION_COOKIE_NAME)
    assert client.cookies.get(settings.CSRF_COOKIE_NAME) == body["csrf_token"]
    set_cookie = " ".join(r.headers.get_list("set-cookie")).lower()
    assert "httponly" in set_cookie and "samesite=strict" in set_cookie

    # 驗證信已寄出
    message = email_sender.last_to(email)
    assert message is not None
    assert "/auth/verify-email/" in message.text_body
    assert len(_verification_token(message)) == 44

    r = await client.get(f"{API}/auth/check-status")
    assert r.json() == {
        "is_authenticated": True,
        "is_email_verified": False,
        "auth_strategy": "local",
        "csrf_token": body["csrf_token"],
    }


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "x", "email": "not-an-email", "password": PASSWORD, "confirm_password": PASSWORD},
        {"name": "", "email": "a@example.com", "password": PASSWORD, "confirm_password": PASSWORD},
        {"name": "n" * 101, "email": "a@example.com", "password": PASSWORD, "confirm_password": PASSWORD},
        {"name": "x", "email": "a@example.com", "password": "short1!", "confirm_password": "short1!"},
        {"name": "x", "email": "a@example.com", "password": "alllowercase1!", "confirm_password": "alllowercase1!"},
        {"name": "x", "email": "a@example.com", "password": "NoDigits!!", "confirm_password": "NoDigits!!"},
        {"name": "x", "email": "a@example.com", "password": "NoSpecial12", "confirm_password": "NoSpecial12"},
        {"name": "x", "email": "a@example.com", "password": PASSWORD, "confirm_password": PASSWORD + "x"},
    ],
)
async def test_signup_validation_errors(client: AsyncClient, payload):
    r = await client.post(f"{API}/users/me", json=payload)
    assert r.status_code == 422, r.text
    assert r.json()["detail"] == "Validation error"


async def test_signup_duplicate_email_conflicts(make_client):
    email = _email()
    async with make_client() as first, make_client() as second:
        assert (await _signup(first, email)).status_code == 201
        r = await _signup(second, email.upper())
        assert r.status_code == 409
        assert r.json()["detail"] == "Email already exists"
        # 失敗時不建立 session
        assert second.cookies.get(settings.SESSION_COOKIE_NAME) is None


async def test_signup_and_login_forbidden_when_logged_in(client: AsyncClient):
    email = _email()
    assert (await _signup(client, email)).status_code == 201
    assert (await _signup(client, _email())).status_code == 403
    assert (await _login(client, email)).status_code == 403


# --- 登入 / 登出 ---
async def test_login_failures_share_one_message(client: AsyncClient, db):
    email = _email()
    await credential_store.create_user(
        db, name="Local", email=email, auth_strategy=AuthStrategy.LOCAL, password=PASSWORD,
    )
    google_email = _email("google")
    await credential_store.create_user(
        db, name="Google", email=google_email,
        auth_strategy=AuthStrategy.GOOGLE_OAUTH, external_id=f"g-{uuid.uuid4().hex}",
    )

    responses = [
        await _login(client, email, "Wrong!Pass1"),
        await _login(client, _email("missing"), PASSWORD),
        await _login(client, google_email, PASSWORD),
    ]
    for r in responses:
        assert r.status_code == 401, r.text
        assert r.json()["detail"] == "Invalid email or password"
    assert client.cookies.get(settings.SESSION_COOKIE_NAME) is None


async def test_login_returns_session_contract_and_counts_logins(client: AsyncClient):
    email = _email()
    r = await _signup(client, email)
    r = await client.post(f"{API}/auth/logout", headers=_csrf(r))
    assert r.status_code == 200

    r = await _login(client, email)
    assert r.status_code == 200, r.text
    assert set(r.json()) == SESSION_KEYS
    assert r.json()["is_email_verified"] is False

    r = await client.get(f"{API}/users/me")
    assert r.status_code == 200
    assert r.json()["user_profile"]["login_count"] == 2


async def test_logout_requires_csrf_and_ends_session(client: AsyncClient):
    r = await _signup(client, _email())
    csrf = _csrf(r)

    assert (await client.post(f"{API}/auth/logout")).status_code == 403
    r = await client.post(f"{API}/auth/logout", headers={settings.CSRF_HEADER_NAME: "forged"})
    assert r.status_code == 403
    assert r.json()["detail"] == "Invalid CSRF token"

    r = await client.post(f"{API}/auth/logout", headers=csrf)
    assert r.status_code == 200
    assert r.json() == {"message": "Logged out"}

    assert (await client.get(f"{API}/users/me")).status_code == 401
    r = await client.get(f"{API}/auth/check-status")
    assert r.json()["is_authenticated"] is False


async def test_logout_when_anonymous_is_unauthorized(client: AsyncClient):
    assert (await client.post(f"{API}/auth/logout")).status_code == 401


async def test_stolen_cookie_csrf_token_from_other_session_is_rejected(make_client):
    async with make_client() as alice, make_client() as bob:
        await _signup(alice, _email("alice"))
        r_bob = await _signup(bob, _email("bob"))
        # bob 的 CSRF token 不能拿來操作 alice 的 session
        r = await alice.post(f"{API}/auth/logout", headers=_csrf(r_bob))
        assert r.status_code == 403


# --- Email 驗證 ---
async def test_verify_email_flow(client: AsyncClient, email_sender):
    email = _email()
    await _signup(client, email)
    token = _verification_token(email_sender.last_to(email))

    r = await client.get(f"{API}/auth/verify-email/{token}")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/html")
    assert "Email verified" in r.text

    r = await client.get(f"{API}/auth/check-status")
    assert r.json()["is_email_verified"] is True

    # token 只能用一次
    r = await client.get(f"{API}/auth/verify-email/{token}")
    assert r.status_code == 400
    assert "Invalid verification link" in r.text


@pytest.mark.parametrize("token", ["abc", "x" * 43, "x" * 45, "A" * 44])
async def test_verify_email_rejects_bad_tokens(client: AsyncClient, token):
    r = await client.get(f"{API}/auth/verify-email/{token}")
    assert r.status_code == 400
    assert "Invalid verification link" in r.text


async def test_resend_verification_replaces_old_link(client: AsyncClient, email_sender):
    email = _email()
    r = await _signup(client, email)
    csrf = _csrf(r)
    old_token = _verification_token(email_sender.last_to(email))

    r = await client.post(f"{API}/auth/send-verification-email", headers=csrf)
    assert r.status_code == 200, r.text
    assert r.json()["token_expire_timestamp"] > int(time.time() * 1000)
    new_token = _verification_token(email_sender.last_to(email))
    assert new_token != old_token

    assert (await client.get(f"{API}/auth/verify-email/{old_token}")).status_code == 400
    assert (await client.get(f"{API}/auth/verify-email/{new_token}")).status_code == 200

    # 已驗證後再要求重寄 → 409
    r = await client.post(f"{API}/auth/send-verification-email", headers=csrf)
    assert r.status_code == 409


async def test_resend_verification_requires_login_and_csrf(client: AsyncClient):
    assert (await client.post(f"{API}/auth/send-verification-email")).status_code == 401
    await _signup(client, _email())
    assert (await client.post(f"{API}/auth/send-verification-email")).status_code == 403


# --- 寄信失敗 ---
async def test_email_failure_is_retryable_and_hides_details(client: AsyncClient, email_sender):
    email = _email()
    email_sender.fail = True
    r = await _signup(client, email)
    assert r.status_code == 503
    assert "Retry-After" in r.headers
    assert "SMTP" not in r.text
    assert client.cookies.get(settings.SESSION_COOKIE_NAME) is None

    # 帳號已建立：登入後可重寄驗證信
    email_sender.fail = False
    r = await _login(client, email)
    assert r.status_code == 200
    r = await client.post(f"{API}/auth/send-verification-email", headers=_csrf(r))
    assert r.status_code == 200
    assert email_sender.last_to(email) is not None


# --- 使用者被刪除 ---
async def test_session_of_deleted_user_becomes_anonymous(client: AsyncClient, db):
    email = _email()
    await _signup(client, email)
    user = await credential_store.find_by_email(db, email)
    await db.delete(user)
    await db.commit()

    r = await client.get(f"{API}/auth/check-status")
    assert r.json()["is_authenticated"] is False
    assert (await client.get(f"{API}/users/me")).status_code == 401
