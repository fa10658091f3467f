# marketplace_client/services/scheduler.py
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from marketplace_client.api.session import AuthSession
from marketplace_client.core.security import is_expiring

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None

@asynccontextmanager
async def session_keepalive(session: AuthSession) -> AsyncGenerator[AsyncIOScheduler, None]:
    """
    登入後的背景排程：啟動 / 關閉 APScheduler。
      - 每 PROACTIVE_REFRESH_MINUTES 分鐘主動 refresh（access token 約 15 分鐘到期）
      - 每 EXTEND_SESSION_MINUTES 分鐘延長後端 session
    """
    global scheduler
    cfg = session.client.settings
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_refresh_job, IntervalTrigger(minutes=cfg.PROACTIVE_REFRESH_MINUTES),
        args=[session], id="proactive-refresh", max_instances=1, coalesce=True,
    )
    scheduler.add_job(
        run_extend_session_job, IntervalTrigger(minutes=cfg.EXTEND_SESSION_MINUTES),
        args=[session], id="extend-session", max_instances=1, coalesce=True,
    )
    scheduler.start()
    logger.info(
        "APScheduler started: refresh every %s min, extend session every %s min",
        cfg.PROACTIVE_REFRESH_MINUTES, cfg.EXTEND_SESSION_MINUTES,
    )
    try:
        yield scheduler
    finally:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("APScheduler shutdown")

async def run_refresh_job(session: AuthSession) -> Optional[bool]:
    """排程作業：token 快到期（或無法判斷）才 refresh；回傳 None 代表略過。"""
    if session.status != "authenticated":
        return None
    access = await session.store.get_access_token()
    if not access:
        return None
    if not is_expiring(access, session.client.settings.REFRESH_LEEWAY_SEC):
        logger.debug("Proactive refresh skipped: access token still fresh")
        return None
    try:
        return await session.refresh()
    except Exception as e:
        # 排程內不可讓例外冒出去中斷 scheduler
        logger.exception("Proactive refresh failed: %s", e)
        return False

async def run_extend_session_job(session: AuthSession) -> Optional[bool]:
    if session.status != "authenticated":
        return None
    return await session.extend_session()
