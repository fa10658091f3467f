# marketplace_client/api/client.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Literal, Mapping, Optional, Sequence, Tuple, Union

import httpx

from marketplace_client.core.config import Settings, settings as default_settings
from marketplace_client.core.errors import ApiError
from marketplace_client.core.security import bearer
from marketplace_client.schemas.auth import (
    RefreshFailure,
    RefreshRequest,
    RefreshResult,
    RefreshSuccess,
    TokenPair,
)
from marketplace_client.services.token_store import TokenStore, build_token_store

logger = logging.getLogger(__name__)

Credentials = Literal["include", "same-origin", "omit"]
UnauthorizedBehavior = Literal["returnNull", "throw"]
Target = Union[str, httpx.URL, httpx.Request]
QueryFn = Callable[[Sequence[Any]], Awaitable[Any]]

_DEFAULT_PORTS = {"http": 80, "https": 443}


class MultipartForm:
    """multipart/form-data 的 payload（對應前端的 FormData）；boundary 交給 httpx 產生"""

    def __init__(self, fields: Optional[Mapping[str, Any]] = None, files: Any = None):
        self.fields = dict(fields or {})
        self.files = files

    def parts(self) -> list:
        # 一般欄位也以 (None, value) 放進 files，httpx 才會一律編成 multipart
        parts = [
            (name, (None, value if isinstance(value, bytes) else str(value)))
            for name, value in self.fields.items()
        ]
        if isinstance(self.files, Mapping):
            parts.extend(self.files.items())
        elif self.files:
            parts.extend(self.files)
        return parts


def origin_of(url: httpx.URL) -> Tuple[str, str, Optional[int]]:
    scheme = url.scheme.lower()
    return scheme, (url.host or "").lower(), url.port or _DEFAULT_PORTS.get(scheme)


def _is_json(response: httpx.Response) -> bool:
    ctype = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    return ctype == "application/json" or ctype.endswith("+json")


def _raise_if_not_ok(response: httpx.Response) -> None:
    if response.is_success:
        return
    text = response.text or response.reason_phrase
    payload = None
    if _is_json(response):
        try:
            payload = response.json()
        except ValueError:
            payload = None
    raise ApiError(response.status_code, text, payload)


def parse_body(response: httpx.Response) -> Any:
    """204 -> None；JSON content-type -> 解析後物件；其餘 -> 原始文字"""
    if response.status_code == 204:
        return None
    if _is_json(response):
        return response.json() if response.content else None
    return response.text


class ApiClient:
    """
    帶身分驗證的 API client：
      1️⃣ 同源請求自動附上 Bearer access token（跨源一律不附，避免外洩）
      2️⃣ 遇到 401 時 refresh 一次並重送一次原請求
      3️⃣ refresh 失敗（被拒 / 回應缺欄位 / 網路錯誤）一律清空兩把 token
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[TokenStore] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or default_settings
        self.store = store if store is not None else build_token_store(self.settings)
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=self.settings.REQUEST_TIMEOUT_SEC)
        self.base_url = httpx.URL(self.settings.API_BASE_URL)
        self._origin = origin_of(self.base_url)
        self._refresh_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # === URL / origin ===
    def resolve_url(self, target: Union[str, httpx.URL]) -> httpx.URL:
        url = httpx.URL(target)
        if url.is_relative_url:
            path = str(url)
            url = self.base_url.join(path if path.startswith("/") else f"/{path}")
        return url

    def is_same_origin(self, url: httpx.URL) -> bool:
        return origin_of(url) == self._origin

    # === authorized fetch ===
    async def authorized_fetch(
        self,
        target: Target,
        *,
        method: str = "GET",
        retry: bool = True,
        credentials: Credentials = "include",
        **options: Any,
    ) -> httpx.Response:
        """
        發送請求；只有「同源 + 401 + retry=True」才會觸發 refresh，
        且每次呼叫最多 refresh 一次、重送一次。其餘狀態碼原樣回傳給呼叫端。
        """
        if isinstance(target, httpx.Request):
            method = target.method
            url = target.url
            headers = httpx.Headers(target.headers)
            for name in ("host", "content-length"):
                headers.pop(name, None)
            headers.update(options.pop("headers", None) or {})
            body = await target.aread()
            if body:
                options.setdefault("content", body)
        else:
            url = self.resolve_url(target)
            headers = httpx.Headers(options.pop("headers", None))

        same_origin = self.is_same_origin(url)
        sent_token: Optional[str] = None
        if same_origin and "authorization" not in headers:
            sent_token = await self.store.get_access_token()
            if sent_token:
                headers["Authorization"] = bearer(sent_token)

        response = await self._send(method, url, headers, credentials, same_origin, options)
        if response.status_code != 401 or not retry or not same_origin:
            return response

        new_token = await self._recover_from_401(sent_token)
        if not new_token:
            return response

        headers["Authorization"] = bearer(new_token)
        logger.debug("Retrying %s %s with refreshed token", method, url.path)
        return await self._send(method, url, headers, credentials, same_origin, options)

    async def _send(
        self,
        method: str,
        url: httpx.URL,
        headers: httpx.Headers,
        credentials: Credentials,
        same_origin: bool,
        options: Dict[str, Any],
    ) -> httpx.Response:
        request = self._http.build_request(method, url, headers=headers, **options)
        if credentials == "omit" or (credentials == "same-origin" and not same_origin):
            request.headers.pop("Cookie", None)
        return await self._http.send(request)

    async def _recover_from_401(self, sent_token: Optional[str]) -> Optional[str]:
        # 其他呼叫已經換過 token：直接用新的重送，不再打 refresh
        current = await self.store.get_access_token()
        if sent_token and current and current != sent_token:
            return current
        if not await self.refresh_access_token():
            return None
        return await self.store.get_access_token()

    # === refresh ===
    async def refresh_access_token(self) -> bool:
        result = await self.refresh_tokens()
        return isinstance(result, RefreshSuccess)

    async def refresh_tokens(self) -> RefreshResult:
        """
        Single-flight：同時間多個呼叫只會共用同一次 refresh。
        同一個 event loop 內，檢查與建立 task 之間沒有 await，因此不需要額外 lock。
        task 以 shield 保護，單一呼叫端被取消不會中斷其他人在等的 refresh。
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh())
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _refresh(self) -> RefreshResult:
        refresh_token = await self.store.get_refresh_token()
        if not refresh_token:
            await self.store.clear()
            logger.info("Token refresh skipped: no refresh token stored")
            return RefreshFailure(reason="no_refresh_token")

        body = RefreshRequest(refresh_token=refresh_token).model_dump(by_alias=True)
        try:
            response = await self._http.post(self.resolve_url(self.settings.REFRESH_PATH), json=body)
        except httpx.HTTPError as e:
            await self.store.clear()
            logger.warning("Token refresh failed (network): %s", type(e).__name__)
            return RefreshFailure(reason="network")

        if not response.is_success:
            await self.store.clear()
            logger.info("Token refresh rejected", extra={"status": response.status_code})
            return RefreshFailure(reason="rejected", status_code=response.status_code)

        try:
            data = response.json()
            pair = TokenPair.model_validate(data)
        except ValueError:
            # JSON 解析失敗或缺 accessToken / refreshToken
            await self.store.clear()
            logger.warning("Token refresh returned a malformed body")
            return RefreshFailure(reason="malformed", status_code=response.status_code)

        await self.store.set_tokens(pair.access_token, pair.refresh_token)
        logger.info("Access token refreshed")
        return RefreshSuccess(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=data.get("user") if isinstance(data.get("user"), dict) else None,
        )

    # === request helpers ===
    async def api_request(self, method: str, url: str, data: Any = None) -> Any:
        """
        JSON（或 multipart）請求；非 2xx 丟 ApiError("<status>: <text>")。
        """
        options: Dict[str, Any] = {}
        if isinstance(data, MultipartForm):
            options["files"] = data.parts()
        elif data is not None:
            options["json"] = data
            options["headers"] = {"Content-Type": "application/json"}

        response = await self.authorized_fetch(url, method=method.upper(), **options)
        _raise_if_not_ok(response)
        return parse_body(response)

    def get_query_fn(self, *, on_401: UnauthorizedBehavior = "throw") -> QueryFn:
        """
        產生 key-based fetcher：query key 以 "/" 串成路徑後 GET。
          - on_401="returnNull"：未登入視為「沒有資料」
          - on_401="throw"：丟 ApiError
        """
        if on_401 not in ("returnNull", "throw"):
            raise ValueError(f"Unsupported on_401 behavior: {on_401!r}")

        async def query_fn(query_key: Sequence[Any]) -> Any:
            path = "/".join(str(part) for part in query_key)
            response = await self.authorized_fetch(path)
            if on_401 == "returnNull" and response.status_code == 401:
                return None
            _raise_if_not_ok(response)
            return parse_body(response)

        return query_fn
