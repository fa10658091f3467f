# marketplace_client/core/errors.py
from typing import Any, Optional


class ClientError(Exception):
    """所有 client 端錯誤的共同基底"""


class ConfigError(ClientError):
    pass


class ApiError(ClientError):
    """
    非 2xx 回應：保留 status 與原始 body 文字，讓呼叫端可依狀態碼分支。
    訊息格式與前端一致："<status>: <text>"
    """

    def __init__(self, status_code: int, body: str = "", payload: Optional[Any] = None):
        self.status_code = status_code
        self.body = body
        self.payload = payload
        super().__init__(f"{status_code}: {body}")

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class AuthError(ClientError):
    """登入 / 註冊被後端拒絕（訊息取自回應的 error 欄位）"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
