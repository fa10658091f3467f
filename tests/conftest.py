# tests/conftest.py
import os
import re
import time
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from httpx import AsyncClient, ASGITransport
from jose import jwt

# ---- 測試期環境變數（先於套件載入）----
os.environ.setdefault("ENV", "test")

from marketplace_client.api.client import ApiClient  # noqa: E402
from marketplace_client.core.config import Settings  # noqa: E402
from marketplace_client.services.token_store import MemoryTokenStore  # noqa: E402

BASE_URL = "http://marketplace.test"
SECRET = "test-secret-key-for-fake-backend"

BUYER = {
    "id": 7,
    "email": "buyer@example.com",
    "role": "buyer",
    "firstName": "Ada",
    "emailVerified": True,
}
SUPPLIER = {
    "id": 8,
    "email": "supplier@example.com",
    "role": "supplier",
    "supplierStatus": "approved",
}
PASSWORDS = {"buyer@example.com": "MyStrongPass", "supplier@example.com": "SupplyPass"}


def make_jwt(sub: str, kind: str, minutes: int = 15) -> str:
    now = int(time.time())
    claims = {"sub": sub, "type": kind, "jti": str(uuid4()), "iat": now, "exp": now + minutes * 60}
    return jwt.encode(claims, SECRET, algorithm="HS256")


class BackendState:
    """假後端的狀態：有效 token、呼叫次數、收到的 header。"""

    def __init__(self) -> None:
        self.valid_access: Dict[str, dict] = {}
        self.valid_refresh: Dict[str, dict] = {}
        self.queued_pairs: List[Tuple[str, str]] = []
        self.refresh_override: Optional[Tuple[int, Any]] = None
        self.refresh_bodies: List[Any] = []
        self.seen: List[Tuple[str, Optional[str]]] = []
        self.hits: Dict[str, int] = {}
        self.logout_calls = 0
        self.extend_calls = 0
        self.resend_calls = 0
        self.reset_requests: List[str] = []

    @property
    def refresh_calls(self) -> int:
        return len(self.refresh_bodies)

    def grant(self, access: str, refresh: str, user: dict = BUYER) -> None:
        self.valid_access[access] = user
        self.valid_refresh[refresh] = user

    def issue(self, user: dict = BUYER) -> Tuple[str, str]:
        if self.queued_pairs:
            access, refresh = self.queued_pairs.pop(0)
        else:
            access, refresh = make_jwt(str(user["id"]), "access"), make_jwt(str(user["id"]), "refresh")
        self.grant(access, refresh, user)
        return access, refresh

    def expire(self, access: str) -> None:
        self.valid_access.pop(access, None)

    def user_for(self, request: Request) -> Optional[dict]:
        header = request.headers.get("authorization") or ""
        if not header.lower().startswith("bearer "):
            return None
        return self.valid_access.get(header.split(" ", 1)[1].strip())

    def hit(self, name: str) -> None:
        self.hits[name] = self.hits.get(name, 0) + 1


def build_backend(state: BackendState) -> FastAPI:
    app = FastAPI()

    def _unauthorized():
        return JSONResponse(status_code=401, content={"error": "Authentication required"})

    @app.post("/api/auth/refresh")
    async def refresh(request: Request):
        body = await request.json()
        state.refresh_bodies.append(body)
        if state.refresh_override is not None:
            status, payload = state.refresh_override
            if isinstance(payload, str):
                return PlainTextResponse(payload, status_code=status)
            return JSONResponse(status_code=status, content=payload)
        user = state.valid_refresh.pop(body.get("refreshToken") or "", None)
        if user is None:
            return JSONResponse(status_code=401, content={"error": "Invalid refresh token"})
        access, new_refresh = state.issue(user)
        return {"accessToken": access, "refreshToken": new_refresh, "user": user}

    @app.post("/api/auth/login")
    async def login(request: Request):
        body = await request.json()
        email = body.get("email")
        if PASSWORDS.get(email) != body.get("password"):
            return JSONResponse(status_code=401, content={"error": "Invalid email or password"})
        user = BUYER if email == BUYER["email"] else SUPPLIER
        data: Dict[str, Any] = {"user": user}
        if body.get("useJWT"):
            data["accessToken"], data["refreshToken"] = state.issue(user)
        return data

    @app.post("/api/auth/register")
    async def register(request: Request):
        body = await request.json()
        if body.get("email") in PASSWORDS:
            return JSONResponse(status_code=409, content={"error": "Email already registered"})
        user = {"id": 99, "email": body["email"], "role": body.get("role", "buyer")}
        access, refresh = state.issue(user)
        return {"user": user, "accessToken": access, "refreshToken": refresh}

    @app.post("/api/auth/logout")
    async def logout():
        state.logout_calls += 1
        return {"message": "Logged out"}

    @app.get("/api/auth/me")
    async def me(request: Request):
        user = state.user_for(request)
        if user is None:
            return _unauthorized()
        return {"user": user}

    @app.post("/api/auth/extend-session")
    async def extend_session(request: Request):
        if state.user_for(request) is None:
            return _unauthorized()
        state.extend_calls += 1
        return {"extended": True}

    @app.put("/api/auth/profile")
    async def update_profile(request: Request):
        user = state.user_for(request)
        if user is None:
            return _unauthorized()
        body = await request.json()
        if "email" in body:
            return JSONResponse(status_code=400, content={"error": "Email cannot be changed here"})
        updated = {**user, **body}
        token = request.headers["authorization"].split(" ", 1)[1].strip()
        state.valid_access[token] = updated
        return {"user": updated}

    @app.post("/api/auth/change-password")
    async def change_password(request: Request):
        user = state.user_for(request)
        if user is None:
            return _unauthorized()
        body = await request.json()
        if PASSWORDS.get(user["email"]) != body.get("currentPassword"):
            return JSONResponse(status_code=400, content={"error": "Current password is incorrect"})
        return {"message": "Password changed"}

    @app.post("/api/auth/request-password-reset")
    async def request_password_reset(request: Request):
        body = await request.json()
        if not body.get("email"):
            return JSONResponse(status_code=400, content={"error": "Email is required"})
        state.reset_requests.append(body["email"])
        return {"message": "If the email exists, a reset link was sent"}

    @app.post("/api/auth/verify-email")
    async def verify_email(request: Request):
        body = await request.json()
        if body.get("token") != "verify-ok":
            return JSONResponse(status_code=400, content={"error": "Invalid or expired verification token"})
        return {"user": {**BUYER, "emailVerified": True}}

    @app.post("/api/auth/resend-verification")
    async def resend_verification(request: Request):
        if state.user_for(request) is None:
            return _unauthorized()
        state.resend_calls += 1
        return {"message": "Verification email sent"}

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: int, request: Request):
        state.seen.append((f"/api/orders/{order_id}", request.headers.get("authorization")))
        if state.user_for(request) is None:
            return _unauthorized()
        return {"id": order_id, "status": "shipped"}

    @app.get("/api/products/{category}/{product_id}")
    async def get_product(category: str, product_id: int, request: Request):
        state.hit("products")
        if state.user_for(request) is None:
            return _unauthorized()
        return {"id": product_id, "category": category}

    @app.api_route("/api/headers", methods=["GET", "POST"])
    async def headers(request: Request):
        return {
            "host": request.headers.get("host"),
            "authorization": request.headers.get("authorization"),
            "cookie": request.headers.get("cookie"),
        }

    @app.post("/api/echo")
    async def echo(request: Request):
        return JSONResponse(content=await request.json())

    @app.post("/api/inspect")
    async def inspect(request: Request):
        body = await request.body()
        return {
            "form": {
                m.group(1).decode(): m.group(2).decode()
                for m in re.finditer(rb'name="([^"]+)"\r\n\r\n(.*?)\r\n--', body, re.S)
            },
            "content_type": request.headers.get("content-type"),
            "has_file": b'filename="' in body,
            "authorization": request.headers.get("authorization"),
        }

    @app.delete("/api/empty")
    async def empty():
        return Response(status_code=204)

    @app.get("/api/text")
    async def text():
        return PlainTextResponse("pong")

    @app.get("/api/fail")
    async def fail():
        return PlainTextResponse("boom", status_code=500)

    @app.get("/api/missing")
    async def missing():
        return JSONResponse(status_code=404, content={"error": "Product not found"})

    return app


@pytest.fixture
def state() -> BackendState:
    return BackendState()


@pytest.fixture
def settings() -> Settings:
    return Settings(API_BASE_URL=BASE_URL, ENV="test", TOKEN_STORE="memory")


@pytest.fixture
def store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest_asyncio.fixture
async def http(state: BackendState):
    """使用 ASGITransport 直接掛載假後端，不需啟動伺服器；任何 host 都會打到同一個 app。"""
    transport = ASGITransport(app=build_backend(state))
    async with AsyncClient(transport=transport) as ac:
        yield ac


@pytest.fixture
def client(settings: Settings, store: MemoryTokenStore, http: AsyncClient) -> ApiClient:
    return ApiClient(settings, store=store, http=http)
