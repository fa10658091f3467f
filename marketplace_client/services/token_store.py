# marketplace_client/services/token_store.py
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis

from marketplace_client.core.config import Settings

logger = logging.getLogger(__name__)


class TokenStore(Protocol):
    """
    Access / Refresh 的保存位置（取代瀏覽器 localStorage）。
    不變條件：兩把 token 一起寫、一起清，不存在只剩其中一把的狀態。
    """

    async def get_access_token(self) -> Optional[str]: ...

    async def get_refresh_token(self) -> Optional[str]: ...

    async def set_tokens(self, access_token: str, refresh_token: str) -> None: ...

    async def clear(self) -> None: ...


# === 記憶體（預設） ===
class MemoryTokenStore:
    def __init__(self, access_token: Optional[str] = None, refresh_token: Optional[str] = None):
        self._pair: Tuple[Optional[str], Optional[str]] = (None, None)
        if access_token and refresh_token:
            self._pair = (access_token, refresh_token)

    async def get_access_token(self) -> Optional[str]:
        return self._pair[0]

    async def get_refresh_token(self) -> Optional[str]:
        return self._pair[1]

    async def set_tokens(self, access_token: str, refresh_token: str) -> None:
        self._pair = (access_token, refresh_token)

    async def clear(self) -> None:
        self._pair = (None, None)


# === JSON 檔案（CLI / 腳本之間共用登入狀態） ===
class JsonFileTokenStore:
    def __init__(
        self,
        path: Path | str,
        access_key: str = "accessToken",
        refresh_key: str = "refreshToken",
    ):
        self.path = Path(path)
        self._access_key = access_key
        self._refresh_key = refresh_key

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Token file unreadable, treating as empty: %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        # 先寫暫存檔再 os.replace，確保兩把 token 原子性替換
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tokens-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=True, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def get_access_token(self) -> Optional[str]:
        return self._read().get(self._access_key) or None

    async def get_refresh_token(self) -> Optional[str]:
        return self._read().get(self._refresh_key) or None

    async def set_tokens(self, access_token: str, refresh_token: str) -> None:
        data = self._read()
        data[self._access_key] = access_token
        data[self._refresh_key] = refresh_token
        self._write(data)

    async def clear(self) -> None:
        data = self._read()
        if self._access_key not in data and self._refresh_key not in data:
            return
        data.pop(self._access_key, None)
        data.pop(self._refresh_key, None)
        self._write(data)


# === Redis（多個 worker 共用同一個 session） ===
class RedisTokenStore:
    def __init__(
        self,
        redis: Redis,
        prefix: str = "marketplace:session:",
        access_key: str = "accessToken",
        refresh_key: str = "refreshToken",
    ):
        self._redis = redis
        self._k_access = f"{prefix}{access_key}"
        self._k_refresh = f"{prefix}{refresh_key}"

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisTokenStore":
        redis = Redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,  # 用字串便於除錯
        )
        return cls(redis, **kwargs)

    async def get_access_token(self) -> Optional[str]:
        return await self._redis.get(self._k_access)

    async def get_refresh_token(self) -> Optional[str]:
        return await self._redis.get(self._k_refresh)

    async def set_tokens(self, access_token: str, refresh_token: str) -> None:
        # MSET 為單一原子指令
        await self._redis.mset({self._k_access: access_token, self._k_refresh: refresh_token})

    async def clear(self) -> None:
        await self._redis.delete(self._k_access, self._k_refresh)

    async def close(self) -> None:
        await self._redis.aclose()


def build_token_store(settings: Settings) -> TokenStore:
    """依 TOKEN_STORE 建立對應的 store"""
    keys = {"access_key": settings.ACCESS_TOKEN_KEY, "refresh_key": settings.REFRESH_TOKEN_KEY}
    if settings.TOKEN_STORE == "file":
        return JsonFileTokenStore(settings.TOKEN_FILE, **keys)
    if settings.TOKEN_STORE == "redis":
        return RedisTokenStore.from_url(settings.REDIS_URL, prefix=settings.REDIS_KEY_PREFIX, **keys)
    return MemoryTokenStore()
