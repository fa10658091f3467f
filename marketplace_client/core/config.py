# marketplace_client/core/config.py
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # === App Info ===
    APP_NAME: str = "Marketplace API Client"
    ENV: str = os.getenv("ENV", "dev")

    # === Backend ===
    # 視為瀏覽器中的「頁面 origin」：同源判斷與相對路徑解析都以此為準
    API_BASE_URL: str = "http://localhost:5000"
    AUTH_PREFIX: str = "/api/auth"
    REFRESH_PATH: str = "/api/auth/refresh"
    REQUEST_TIMEOUT_SEC: float = 30.0

    @field_validator("API_BASE_URL")
    @classmethod
    def _check_base_url(cls, v: str) -> str:
        s = (v or "").strip().rstrip("/")
        if not s.startswith(("http://", "https://")):
            raise ValueError("API_BASE_URL must be an absolute http(s) URL")
        return s

    # === Token storage（對應前端 localStorage 的兩個 key）===
    TOKEN_STORE: Literal["memory", "file", "redis"] = "memory"
    ACCESS_TOKEN_KEY: str = "accessToken"
    REFRESH_TOKEN_KEY: str = "refreshToken"
    TOKEN_FILE: str = os.getenv("TOKEN_FILE", ".marketplace_tokens.json")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_KEY_PREFIX: str = "marketplace:session:"

    # === Keep-alive（access token 約 15 分鐘到期）===
    PROACTIVE_REFRESH_MINUTES: int = 14
    EXTEND_SESSION_MINUTES: int = 25
    REFRESH_LEEWAY_SEC: int = 120

    # === Logging ===
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def auth_path(self, name: str) -> str:
        return f"{self.AUTH_PREFIX.rstrip('/')}/{name.lstrip('/')}"


@lru_cache
def get_settings() -> Settings:
    """測試環境一律改用記憶體 token store，避免寫檔或連 Redis"""
    s = Settings()
    if s.ENV == "test":
        s.TOKEN_STORE = "memory"
    return s


settings = get_settings()
