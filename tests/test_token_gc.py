# tests/test_token_gc.py
import logging
import uuid
from datetime import timedelta

import pytest
from fastapi import FastAPI
from sqlalchemy import insert, select

from app.core.config import settings
from app.core.security import generate_secret, generate_token, hash_token
from app.models.tokens import Token, TokenPurpose
from app.models.user_sessions import UserSession
from app.models.users import AuthStrategy
from app.services import credential_store
from app.services import tokens as token_service
from app.services.token_gc import JOB_ID, TokenGarbageCollector, lifespan_token_gc, run_gc_once
from app.utils.time import utcnow

pytestmark = pytest.mark.asyncio


async def test_start_stop_lifecycle():
    gc = TokenGarbageCollector(interval_sec=3600)
    assert not gc.is_running()

    gc.start()
    try:
        assert gc.is_running()
        job = gc._scheduler.get_job(JOB_ID)
        assert job is not None
        assert job.trigger.interval == timedelta(seconds=3600)
    finally:
        gc.stop()
    assert not gc.is_running()

    # 重複 stop 不報錯
    gc.stop()
    assert not gc.is_running()


async def test_start_twice_keeps_single_scheduler(caplog):
    gc = TokenGarbageCollector(interval_sec=3600)
    gc.start()
    try:
        first = gc._scheduler
        with caplog.at_level(logging.WARNING, logger="app.services.token_gc"):
            gc.start(interval_sec=60)
        assert "Token garbage collection already running" in caplog.text
        assert gc._scheduler is first
        assert gc.interval_sec == 3600
    finally:
        gc.stop()


async def test_start_with_custom_interval():
    gc = TokenGarbageCollector()
    gc.start(interval_sec=120)
    try:
        assert gc._scheduler.get_job(JOB_ID).trigger.interval == timedelta(seconds=120)
    finally:
        gc.stop()


async def test_run_gc_once_prunes_expired_tokens_and_sessions(db):
    user = await credential_store.create_user(
        db, name="GC", email=f"gc-{uuid.uuid4().hex[:10]}@example.com",
        auth_strategy=AuthStrategy.LOCAL, password="Str0ng!Pass",
    )
    now = utcnow()
    expired_token, live_token = generate_token(), generate_token()
    await db.execute(insert(Token).values([
        dict(token=expired_token, purpose=TokenPurpose.VERIFY_EMAIL, user_id=user.id,
             created_at=now - timedelta(days=2), expire=now - timedelta(days=1)),
        dict(token=live_token, purpose=TokenPurpose.VERIFY_EMAIL, user_id=user.id,
             created_at=now, expire=now + timedelta(days=1)),
    ]))
    expired_sid, live_sid = hash_token(generate_token()), hash_token(generate_token())
    await db.execute(insert(UserSession).values([
        dict(sid_hash=expired_sid, user_id=user.id, csrf_secret=generate_secret(),
             created_at=now - timedelta(days=2), expire=now - timedelta(minutes=1)),
        dict(sid_hash=live_sid, user_id=user.id, csrf_secret=generate_secret(),
             created_at=now, expire=now + timedelta(days=1)),
    ]))
    await db.commit()

    deleted = await run_gc_once()
    assert deleted >= 1

    res = await db.execute(select(Token.token).where(Token.token.in_([expired_token, live_token])))
    assert set(res.scalars().all()) == {live_token}
    res = await db.execute(
        select(UserSession.sid_hash).where(UserSession.sid_hash.in_([expired_sid, live_sid]))
    )
    assert set(res.scalars().all()) == {live_sid}


async def test_lifespan_respects_enabled_flag(monkeypatch):
    app = FastAPI()

    monkeypatch.setattr(settings, "TOKEN_GC_ENABLED", False)
    async with lifespan_token_gc(app):
        assert not app.state.token_gc.is_running()

    monkeypatch.setattr(settings, "TOKEN_GC_ENABLED", True)
    async with lifespan_token_gc(app):
        assert app.state.token_gc.is_running()
    assert not app.state.token_gc.is_running()


async def test_run_gc_once_logs_and_swallows_failures(monkeypatch, caplog):
    async def broken_delete_expired(db, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(token_service, "delete_expired", broken_delete_expired)

    with caplog.at_level(logging.ERROR, logger="app.services.token_gc"):
        assert await run_gc_once() == 0
    assert "Error deleting expired tokens" in caplog.text
    assert "database went away" in caplog.text
