# app/core/errors.py
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger(__name__)

GENERIC_SERVER_ERROR = "Internal server error"
GENERIC_UNAVAILABLE = "Service temporarily unavailable. Please try again later."


# === 錯誤分類 ===
class AppError(Exception):
    """
    服務層錯誤的基底類別；每個子類別對應一個 HTTP 狀態碼。
    message 會原樣回傳給前端，因此不可放入內部細節。
    """

    status_code: int = 400

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers


class ValidationError(AppError):
    status_code = 400


class BadRequestError(ValidationError):
    pass


class AuthenticationError(AppError):
    status_code = 401


class InvalidCredentials(AuthenticationError):
    # 帳號不存在 / 登入方式不符 / 密碼錯誤 一律同一訊息，避免帳號探測
    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class AuthorizationError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class DuplicateEmailOrIdentity(ConflictError):
    def __init__(self, message: str = "Email already exists") -> None:
        super().__init__(message)


class TransientInfraError(AppError):
    """
    DB / 寄信 / 第三方身分提供者失敗。
    對外只回通用訊息；retryable=True 時回 503 + Retry-After。
    """

    status_code = 500
    retryable: bool = False
    retry_after_sec: int = 30

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause
        if self.retryable:
            self.status_code = 503


class TokenGenerationFailed(TransientInfraError):
    pass


class EmailDeliveryError(TransientInfraError):
    retryable = True


class IdentityProviderError(TransientInfraError):
    retryable = True


# 程式誤用（不是使用者輸入錯誤），維持 ValueError / RuntimeError 語意
class InvalidArgument(ValueError):
    pass


class NoPasswordSet(RuntimeError):
    pass


def _error_body(message: str, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"detail": message}
    body.update(extra)
    return body


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):
        # 統一輸出格式
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail},
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):
        # 客製化，但保持資訊節制；validator 拋出的 ValueError 需先轉成可序列化格式
        log.warning("Validation error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(TransientInfraError)
    async def infra_exc_handler(request: Request, exc: TransientInfraError):
        # 完整細節只留在伺服器端 log
        log.error(
            "Infrastructure failure on %s %s: %s (cause=%r)",
            request.method, request.url.path, exc.message, exc.cause,
            exc_info=exc.cause or exc,
        )
        if exc.retryable:
            return JSONResponse(
                status_code=503,
                content=_error_body(GENERIC_UNAVAILABLE),
                headers={"Retry-After": str(exc.retry_after_sec)},
            )
        return JSONResponse(status_code=500, content=_error_body(GENERIC_SERVER_ERROR))

    @app.exception_handler(AppError)
    async def app_exc_handler(request: Request, exc: AppError):
        log.warning("%s on %s %s: %s", type(exc).__name__, request.method,
                    request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message),
                            headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if app.debug else GENERIC_SERVER_ERROR
        return JSONResponse(status_code=500, content=_error_body(message))

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        # 小強化：避免洩露伺服器細節
        resp = await call_next(request)
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        return resp

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        resp = await call_next(request)
        log.info("%s %s -> %s", request.method, request.url.path, resp.status_code)
        return resp
