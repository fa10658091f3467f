# marketplace_client/main.py
import logging
from typing import Optional

import httpx

from marketplace_client.api.client import ApiClient
from marketplace_client.api.query import QueryClient
from marketplace_client.core.config import Settings, settings as default_settings
from marketplace_client.core.errors import ConfigError
from marketplace_client.core.logging import setup_logging
from marketplace_client.services.token_store import TokenStore

log = logging.getLogger(__name__)


def _validate_settings(cfg: Settings) -> None:
    """
    部署前安全檢查：prod/staging/preview 環境不允許以明文 http 傳送 Bearer token。
    """
    env = (cfg.ENV or "").lower()
    if env in {"prod", "production", "staging", "preview"}:
        if not cfg.API_BASE_URL.startswith("https://"):
            raise ConfigError(
                f"Insecure API_BASE_URL for ENV={cfg.ENV}: bearer tokens require https."
            )


def create_client(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[TokenStore] = None,
    http: Optional[httpx.AsyncClient] = None,
    configure_logging: bool = False,
) -> ApiClient:
    cfg = cfg or default_settings
    _validate_settings(cfg)
    if configure_logging:
        setup_logging(cfg.LOG_LEVEL)

    client = ApiClient(cfg, store=store, http=http)
    log.info("API client initialized", extra={"env": cfg.ENV, "store": type(client.store).__name__})
    return client


def create_query_client(client: ApiClient) -> QueryClient:
    # 全域 queryClient：受保護資料預設 on_401="throw"
    return QueryClient.for_client(client, on_401="throw")
