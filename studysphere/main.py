"""
studysphere.main
~~~~~~~~~~~~~~~~

FastAPI 应用入口：注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from studysphere.api import rooms, ws
from studysphere.core.config import settings
from studysphere.core.logging import get_logger, setup_logging
from studysphere.core.rate_limit import WebSocketRateLimiter, limiter
from studysphere.db import close_mongo, connect_mongo, ping_mongo
from studysphere.db.room_repository import RoomRepository
from studysphere.schemas.api_response import ApiResponse
from studysphere.services.dispatcher import EventDispatcher
from studysphere.services.study_system import StudySystem

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子：连接数据库 → 写入默认房间 → 恢复房间会话。"""
    # ── 启动 ──
    db = await connect_mongo()
    system = StudySystem(RoomRepository(db))
    await system.startup(seed_default_rooms=settings.SEED_DEFAULT_ROOMS)
    app.state.study_system = system
    app.state.event_dispatcher = EventDispatcher(
        system,
        chat_limiter=WebSocketRateLimiter(interval_seconds=settings.CHAT_RATE_LIMIT_INTERVAL),
    )
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await system.shutdown()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="自习室在线状态、入房审批、信令转发与共享文档同步",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

# ── 限流 ──────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, prefix="/api", tags=["Study Rooms"])
app.include_router(ws.router, tags=["WebSocket Rooms"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "Internal server error"
    return ApiResponse.fail(msg=detail, code=500, data=None).to_json_response()


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。"""
    system: StudySystem | None = getattr(request.app.state, "study_system", None)
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "mongo": await ping_mongo(),
            "connections": system.registry.online_count if system is not None else 0,
            "rooms": len(system.directory.sessions()) if system is not None else 0,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "studysphere.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
