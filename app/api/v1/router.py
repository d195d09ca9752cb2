# app/api/v1/router.py
from fastapi import APIRouter

# 匯入所有已定義的 endpoint 模組
from .endpoints import health, users, auth

# === API v1 主路由 ===
api_router = APIRouter()

# 系統健康檢查
api_router.include_router(health.router, prefix="/health", tags=["health"])

# 使用者相關（註冊、個人資料、列表、統計）
api_router.include_router(users.router, prefix="/users", tags=["users"])

# 認證 / 登入登出 / Email 驗證 / Google OAuth
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
