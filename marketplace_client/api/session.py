# marketplace_client/api/session.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Literal, Optional, Tuple, Union

import httpx
from pydantic import ValidationError

from marketplace_client.api.client import ApiClient
from marketplace_client.core.errors import AuthError
from marketplace_client.schemas.auth import LoginRequest, RefreshSuccess
from marketplace_client.schemas.user import SessionUser

logger = logging.getLogger(__name__)

AuthStatus = Literal["idle", "loading", "authenticated", "unauthenticated", "error"]

# 前端簡化版的角色權限表（真正的授權仍由後端判斷）
ROLE_PERMISSIONS: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "supplier": {
        "products": ("read", "write", "delete"),
        "orders": ("read", "write", "fulfill"),
        "inquiries": ("read", "write", "respond"),
        "quotations": ("read", "write", "send"),
        "rfqs": ("read", "respond"),
        "analytics": ("read",),
        "financial": ("read",),
        "settings": ("read", "write"),
    },
    "buyer": {
        "products": ("read", "search", "favorite"),
        "orders": ("read", "write", "cancel"),
        "inquiries": ("read", "write", "send"),
        "quotations": ("read", "compare", "accept"),
        "rfqs": ("read", "write", "create"),
        "analytics": ("read",),
        "settings": ("read", "write"),
    },
}

# 未核准的供應商不能做的動作
_SUPPLIER_WRITE_ACTIONS = {"write", "delete", "create"}


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return fallback
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or fallback)
    return fallback


def _read_object(response: httpx.Response) -> Dict[str, Any]:
    # 2xx 但 body 不是 JSON object：視為後端回應異常
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise AuthError("Unexpected response from server", response.status_code)
    return data


class AuthSession:
    """
    使用者 session 狀態（登入 / 註冊 / 登出 / 驗證身分 / 延長 session）。
    所有請求都經過 ApiClient，401 的 refresh 邏輯由 client 統一處理。
    """

    def __init__(self, client: ApiClient):
        self.client = client
        self.user: Optional[SessionUser] = None
        self.status: AuthStatus = "idle"
        self.error: Optional[str] = None

    @property
    def store(self):
        return self.client.store

    def _path(self, name: str) -> str:
        return self.client.settings.auth_path(name)

    def _set_user(self, data: Any) -> None:
        raw = data.get("user") if isinstance(data, dict) else None
        if not raw:
            self.user = None
            return
        try:
            self.user = SessionUser.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed user payload")
            self.user = None

    async def _store_pair(self, data: Dict[str, Any]) -> None:
        access, refresh = data.get("accessToken"), data.get("refreshToken")
        if access and refresh:
            await self.store.set_tokens(access, refresh)

    def _success_body(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            return _read_object(response)
        except AuthError as e:
            self.error = str(e)
            self.status = "error"
            raise

    async def _call(
        self,
        method: str,
        name: str,
        fallback: str,
        json: Any = None,
        *,
        authorized: bool = True,
    ) -> httpx.Response:
        """
        帳號管理類請求：失敗時設定 error 並丟 AuthError（不改變登入狀態）。
        authorized=False 的端點（忘記密碼 / 驗證信）不需要 refresh。
        """
        self.error = None
        response = await self.client.authorized_fetch(
            self._path(name), method=method, json=json, retry=authorized
        )
        if not response.is_success:
            self.error = _error_message(response, fallback)
            logger.warning("%s %s failed", method, name, extra={"status": response.status_code})
            raise AuthError(self.error, response.status_code)
        return response

    def clear_error(self) -> None:
        self.error = None

    async def _unauthenticate(self, status: AuthStatus = "unauthenticated") -> None:
        self.user = None
        await self.store.clear()
        self.status = status

    # === 登入 ===
    async def login(self, email: str, password: str, use_jwt: bool = True) -> Optional[SessionUser]:
        self.status = "loading"
        self.error = None
        body = LoginRequest(email=email, password=password, use_jwt=use_jwt).model_dump(by_alias=True)
        response = await self.client.authorized_fetch(self._path("login"), method="POST", json=body, retry=False)
        if not response.is_success:
            self.error = _error_message(response, "Login failed")
            self.status = "error"
            raise AuthError(self.error, response.status_code)

        data = self._success_body(response)
        if use_jwt:
            await self._store_pair(data)
        self._set_user(data)
        self.status = "authenticated"
        logger.info("Logged in")
        return self.user

    # === 註冊 ===
    async def register(self, payload: Dict[str, Any]) -> bool:
        self.status = "loading"
        self.error = None
        response = await self.client.authorized_fetch(self._path("register"), method="POST", json=payload, retry=False)
        if not response.is_success:
            self.error = _error_message(response, "Registration failed")
            self.status = "error"
            raise AuthError(self.error, response.status_code)

        data = self._success_body(response)
        await self._store_pair(data)
        self._set_user(data)
        self.status = "authenticated"
        return True

    # === 登出（後端失敗也一定清掉本地 token） ===
    async def logout(self) -> None:
        try:
            await self.client.authorized_fetch(self._path("logout"), method="POST", retry=False)
        except httpx.HTTPError as e:
            logger.warning("Logout request failed: %s", type(e).__name__)
        finally:
            await self._unauthenticate()
            self.error = None

    # === 驗證目前 token ===
    async def check_auth(self) -> Optional[SessionUser]:
        self.status = "loading"
        self.error = None
        try:
            response = await self.client.authorized_fetch(self._path("me"))
        except httpx.HTTPError as e:
            logger.warning("Auth check failed: %s", type(e).__name__)
            self.error = "Failed to verify authentication"
            await self._unauthenticate("error")
            return None

        if not response.is_success:
            await self._unauthenticate()
            return None

        self._set_user(response.json())
        self.status = "authenticated" if self.user else "unauthenticated"
        return self.user

    async def refresh(self) -> bool:
        result = await self.client.refresh_tokens()
        if not isinstance(result, RefreshSuccess):
            self.user = None
            self.status = "unauthenticated"
            self.error = "Session expired. Please login again."
            return False

        if result.user:
            self._set_user({"user": result.user})
        self.status = "authenticated"
        self.error = None
        return True

    async def extend_session(self) -> bool:
        try:
            response = await self.client.authorized_fetch(self._path("extend-session"), method="POST")
        except httpx.HTTPError as e:
            logger.warning("Session extension error: %s", type(e).__name__)
            return False
        if not response.is_success:
            logger.warning("Failed to extend session", extra={"status": response.status_code})
            return False
        return True

    # === 帳號管理 ===
    async def update_user_profile(self, updates: Dict[str, Any]) -> Optional[SessionUser]:
        response = await self._call("PUT", "profile", "Failed to update profile", updates)
        self._set_user(_read_object(response))
        return self.user

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self._call(
            "POST",
            "change-password",
            "Failed to change password",
            {"currentPassword": current_password, "newPassword": new_password},
        )

    async def request_password_reset(self, email: str) -> None:
        await self._call(
            "POST",
            "request-password-reset",
            "Failed to request password reset",
            {"email": email},
            authorized=False,
        )

    async def verify_email(self, token: str) -> Optional[SessionUser]:
        response = await self._call(
            "POST", "verify-email", "Failed to verify email", {"token": token}, authorized=False
        )
        self._set_user(_read_object(response))
        return self.user

    async def resend_verification_email(self) -> None:
        await self._call("POST", "resend-verification", "Failed to resend verification email")

    # === 權限（前端簡化版） ===
    def has_permission(self, resource: str, action: str) -> bool:
        if not self.user:
            return False
        if self.user.role == "admin":
            return True
        # 供應商員工：只看自己的 staff 權限
        if self.user.is_staff_member and self.user.staff_permissions is not None:
            return action in self.user.staff_permissions.get(resource, ())
        return action in ROLE_PERMISSIONS.get(self.user.role, {}).get(resource, ())

    def can_access_resource(self, resource: str, action: str) -> bool:
        return self.has_permission(resource, action)

    def can_manage_supplier_resource(self, resource: str, action: str) -> bool:
        if not self.user or self.user.role != "supplier":
            return False
        if action in _SUPPLIER_WRITE_ACTIONS and not self.is_supplier_approved:
            return False
        return self.has_permission(resource, action)

    def can_access_admin_feature(self, feature: str) -> bool:
        # 目前所有 admin 都能使用全部後台功能
        return bool(self.user and self.user.role == "admin")

    # === 角色 / 狀態 ===
    def has_role(self, role: Union[str, Iterable[str]]) -> bool:
        if not self.user:
            return False
        if isinstance(role, str):
            return self.user.role == role
        return self.user.role in set(role)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_supplier_approved(self) -> bool:
        return bool(self.user and self.user.role == "supplier" and self.user.supplier_status == "approved")

    @property
    def is_email_verified(self) -> bool:
        return bool(self.user and self.user.email_verified)

    @property
    def is_account_locked(self) -> bool:
        if not self.user or not self.user.locked_until:
            return False
        locked_until = self.user.locked_until
        if locked_until.tzinfo is None:
            locked_until = locked_until.replace(tzinfo=timezone.utc)
        return locked_until > datetime.now(timezone.utc)

    @property
    def is_staff_member(self) -> bool:
        return bool(self.user and self.user.is_staff_member)
