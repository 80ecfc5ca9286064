"""
Spenddy 消费数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn spend_service.main:app --host 0.0.0.0 --port 8001
    python -m spend_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from spend_service import __version__
from spend_service.config import settings
from spend_service.db import init_mongodb, init_redis, close_connections
from spend_service.errors import PayloadRejectedError, UnknownSourceError
from spend_service.models.response import ApiResponse
from spend_service.routers import health, sources, cache
from spend_service.services.dataset_manager import get_dataset_manager

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Spenddy DatasetService v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   采集目录  : {settings.CAPTURE_DIR}")
    logger.info(f"   缓存目录  : {settings.CACHE_DIR}")
    logger.info("=" * 60)

    # 存储连接失败不阻断启动，降级运行
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有存储连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，采集数据仅从本地目录读取")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，持久化缓存使用文件模式")
    else:
        logger.warning("⚠️ 存储服务均不可用，降级为纯文件模式")

    manager = get_dataset_manager()
    if settings.BACKGROUND_SWEEPS_ENABLED:
        manager.start()

    yield

    logger.info("🔄 消费数据服务正在关闭...")
    manager.stop()
    await close_connections()
    logger.info("✅ 消费数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Spenddy 消费数据服务",
    description=(
        "外卖 / 即时零售 / 到店餐饮订单导出数据的统一归一化与汇总服务：\n"
        "- 🧾 多来源订单归一化（swiggy / swiggy-instamart / swiggy-dineout）\n"
        "- 🗄️ 两级存储（采集存储 Redis → 持久化缓存 MongoDB / 文件）\n"
        "- ♻️ 内存数据集缓存（30 秒刷新、闲置回收）\n"
        "- 📈 月度 / 商家 / 时段消费分布\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 读取采集代理写入的原始导出\n"
        "Cache Layer        ← MongoDB / 文件持久化缓存\n"
        "Processing Layer   ← 汇总统计、时间过滤\n"
        "Analysis Layer     ← 消费分布分析\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
@app.exception_handler(PayloadRejectedError)
async def payload_rejected_handler(request: Request, exc: PayloadRejectedError):
    logger.warning(f"导入数据被拒绝: {exc}")
    return JSONResponse(
        status_code=422,
        content=ApiResponse.fail(error="导入数据非法", message=str(exc)).model_dump(),
    )


@app.exception_handler(UnknownSourceError)
async def unknown_source_handler(request: Request, exc: UnknownSourceError):
    return JSONResponse(
        status_code=404,
        content=ApiResponse.fail(error="未知数据来源", message=str(exc)).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(sources.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Spenddy DatasetService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "spend_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
