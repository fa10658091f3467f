# marketplace_client/core/security.py
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jose import jwt, JWTError

# === Bearer header ===
def bearer(token: str) -> str:
    return f"Bearer {token}"

# === JWT Helpers ===
# token 對 client 來說是 opaque：只在「剛好是 JWT」時偷看 exp，不做簽章驗證
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)

def peek_claims(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    讀出未驗證的 claims；不是 JWT 或格式錯誤時回傳 None。
    """
    if not token:
        return None
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return None

def seconds_to_expiry(token: Optional[str]) -> Optional[int]:
    """
    距離 exp 的剩餘秒數（可能為負）；無 exp 或無法解析時回傳 None。
    """
    claims = peek_claims(token)
    if not claims:
        return None
    exp = claims.get("exp")
    try:
        return int(exp) - int(_now_utc().timestamp())
    except (TypeError, ValueError):
        return None

def is_expiring(token: Optional[str], leeway_seconds: int) -> bool:
    """
    是否需要主動 refresh：
      - 無法得知 exp（opaque token） -> True，交給排程照表操課
      - 剩餘秒數 <= leeway -> True
    """
    remaining = seconds_to_expiry(token)
    if remaining is None:
        return True
    return remaining <= leeway_seconds
