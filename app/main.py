# app/main.py
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.errors import register_error_handlers
from app.api.v1.router import api_router
from app.services.token_gc import lifespan_token_gc  # lifespan（token GC 排程）

# Monitoring
import sentry_sdk
from prometheus_fastapi_instrumentator import Instrumentator

logger = setup_logging()
log = logging.getLogger(__name__)

DEFAULT_SECRETS = {
    "change_this_to_a_long_random_string",
    "change_this_csrf_secret_as_well",
}


def _validate_secrets() -> None:
    """
    部署前安全檢查：在 prod/staging/preview 等環境時，不允許使用預設、過短或空的金鑰。
    """
    env = (settings.ENV or "").lower()
    if env in {"prod", "production", "staging", "preview"}:
        missing_or_weak = []
        for name in ("SECRET_KEY", "CSRF_SECRET"):
            value = getattr(settings, name)
            if not value or len(value) < 32 or value in DEFAULT_SECRETS:
                missing_or_weak.append(name)
        if missing_or_weak:
            raise RuntimeError(
                f"Insecure config for {', '.join(missing_or_weak)} in ENV={settings.ENV}. "
                "Please set strong keys via environment variables."
            )


def create_app() -> FastAPI:
    # 基本安全檢查
    _validate_secrets()

    # 啟用 lifespan（內含 APScheduler：過期 token / session 清理）
    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        lifespan=lifespan_token_gc,
    )

    # CORS：session cookie 需要 allow_credentials
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---- Sentry 初始化（未設定 SENTRY_DSN 就略過）----
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            traces_sample_rate=0.1,
            environment=settings.SENTRY_ENV,
            send_default_pii=False,
        )

    # ---- Prometheus /metrics ----
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    # 統一錯誤處理
    register_error_handlers(app)

    # === API 路由 ===
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # 健康檢查（root & ops）
    @app.get("/", summary="Root")
    async def root():
        return {"app": settings.APP_NAME, "env": settings.ENV}

    @app.get("/healthz", tags=["ops"])
    async def healthz():
        return {"ok": True}

    @app.get("/readyz", tags=["ops"])
    async def readyz():
        gc = getattr(app.state, "token_gc", None)
        return {"ready": True, "token_gc_running": bool(gc and gc.is_running())}

    log.info("Application initialized (env=%s)", settings.ENV)
    return app


# Uvicorn 進入點
app = create_app()
