"""
PayBridge 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── 后台任务 ──────────────────────────────────────────────

async def _payout_job_task() -> None:
    """定期执行到期的商家付款任务（每 60 秒）。"""
    from app.services.payout_queue import run_due_jobs

    while True:
        try:
            processed = await asyncio.to_thread(run_due_jobs)
            if processed:
                logger.info("付款任务执行完成: processed=%d", processed)
        except Exception as e:
            logger.error("付款任务异常: %s", e)
        await asyncio.sleep(60)


async def _transient_purge_task() -> None:
    """定期清理过期的 transient 记录（每 10 分钟）。"""
    from app.services.transients import purge_expired

    while True:
        try:
            removed = purge_expired()
            logger.debug("过期 transient 清理完成: removed=%s", removed)
        except Exception as e:
            logger.error("transient 清理异常: %s", e)
        await asyncio.sleep(600)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from app.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_payout_job_task()))
        tasks.append(asyncio.create_task(_transient_purge_task()))
        logger.info("后台任务已启动：商家付款任务、过期 transient 清理")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="PayBridge", description="多渠道支付编排与 Webhook 对账", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from app.routes.webhooks import router as webhooks_router
from app.routes.returns import router as returns_router
from app.routes.orders import router as orders_router
from app.routes.wallet import router as wallet_router
from app.routes.connect import router as connect_router
from app.routes.admin import router as admin_router

app.include_router(webhooks_router)
app.include_router(returns_router)
app.include_router(orders_router)
app.include_router(wallet_router)
app.include_router(connect_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
