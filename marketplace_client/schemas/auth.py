from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    # 後端 JSON 用 camelCase；Python 端用 snake_case
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenPair(_WireModel):
    access_token: str = Field(..., alias="accessToken", min_length=1)
    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class RefreshRequest(_WireModel):
    refresh_token: str = Field(..., alias="refreshToken")


class LoginRequest(_WireModel):
    email: str
    password: str
    use_jwt: bool = Field(True, alias="useJWT")


# === Refresh 結果（tagged union）===
RefreshFailureReason = Literal["no_refresh_token", "rejected", "malformed", "network"]


class RefreshSuccess(BaseModel):
    kind: Literal["success"] = "success"
    access_token: str
    refresh_token: str
    # refresh 回應附帶的 user（若有）
    user: Optional[Dict[str, Any]] = None


class RefreshFailure(BaseModel):
    kind: Literal["failure"] = "failure"
    reason: RefreshFailureReason
    status_code: int | None = None


RefreshResult = Union[RefreshSuccess, RefreshFailure]
