# app/services/token_gc.py
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from fastapi import FastAPI  # 型別標註用

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.db.session import AsyncSessionLocal
from app.services import sessions as session_service
from app.services import tokens as token_service

logger = logging.getLogger(__name__)

JOB_ID = "token-gc"


async def run_gc_once() -> int:
    """
    排程作業：建立一次性 DB session，刪除過期 token（及過期 session）。
    失敗只記錄不拋出；GC 只是維護工作，不能讓程序掛掉。
    """
    db = AsyncSessionLocal()
    try:
        deleted = await token_service.delete_expired(db)
        expired_sessions = await session_service.delete_expired_sessions(db)
        logger.info("Deleted %s expired tokens, %s expired sessions", deleted, expired_sessions)
        return deleted
    except Exception as e:
        logger.exception("Error deleting expired tokens: %s", e)
        await db.rollback()
        return 0
    finally:
        await db.close()


class TokenGarbageCollector:
    """
    過期 token 的定期清理。
    每個 process 一個實例，由 app lifespan 持有並負責 start / stop。
    """

    def __init__(self, interval_sec: int = settings.TOKEN_GC_INTERVAL_SEC) -> None:
        self.interval_sec = interval_sec
        self._scheduler: Optional[AsyncIOScheduler] = None

    def start(self, interval_sec: Optional[int] = None) -> None:
        if self._scheduler is not None:
            logger.warning("Token garbage collection already running")
            return
        if interval_sec is not None:
            self.interval_sec = interval_sec
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            run_gc_once,
            IntervalTrigger(seconds=self.interval_sec),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Starting token garbage collection with interval %s s", self.interval_sec)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        logger.info("Stopping token garbage collection")
        self._scheduler.shutdown(wait=False)
        self._scheduler = None

    def is_running(self) -> bool:
        return self._scheduler is not None


@asynccontextmanager
async def lifespan_token_gc(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan：啟動 / 關閉 token GC。
    需接受 app 參數（FastAPI 會注入），否則會出現 TypeError。
    """
    gc = TokenGarbageCollector()
    app.state.token_gc = gc
    if settings.TOKEN_GC_ENABLED:
        gc.start()
    try:
        yield
    finally:
        gc.stop()
