"""
playroom.main
~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from playroom.api import room_endpoints, room_ws
from playroom.clients import InMemoryLedger, InMemoryWallet, MongoLedger, MongoWallet
from playroom.core.errors import DomainError
from playroom.core.logging import get_logger, request_id_ctx_var, setup_logging
from playroom.core.rate_limit import limiter
from playroom.core.settings import settings
from playroom.db import close_mongo, connect_mongo, ping_mongo
from playroom.schemas.api_response import ApiResponse
from playroom.services.live_system import RoomSystem
from playroom.services.payments import PaymentGateway
from playroom.services.presence import RoomMaintenance

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


def build_room_system(db: AsyncIOMotorDatabase | None = None) -> RoomSystem:
    """组装钱包、账本与房间系统。传入数据库句柄时使用 Mongo 持久化，否则使用进程内存储。"""
    if db is not None:
        gateway = PaymentGateway(MongoWallet(db), MongoLedger(db))
    else:
        gateway = PaymentGateway(InMemoryWallet(), InMemoryLedger())
    return RoomSystem(gateway, settings)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    db = await connect_mongo() if settings.STORAGE_BACKEND == "mongo" else None

    app.state.room_system = build_room_system(db)
    maintenance = RoomMaintenance(
        app.state.room_system,
        interval=settings.TICK_INTERVAL_SECONDS,
        reconcile_interval=settings.RECONCILE_INTERVAL_SECONDS,
    )
    await maintenance.start()
    logger.info(
        "🚀 应用已启动 | env=%s | storage=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.STORAGE_BACKEND,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await maintenance.stop()
    if settings.STORAGE_BACKEND == "mongo":
        await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="付费互动房间核心 API：入场计费与上麦席位",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

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
        allow_origins=[],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

# ── 请求 ID 中间件 ────────────────────────────────────────────────────

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """为每个 HTTP 请求设置 request_id（优先使用客户端传入的 X-Request-ID）。"""
    req_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(req_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx_var.reset(token)
    response.headers["X-Request-ID"] = req_id
    return response


# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(room_endpoints.router, prefix="/api", tags=["Rooms & Billing"])
app.include_router(room_ws.router, tags=["WebSocket Rooms"])


# ── 异常处理器 ────────────────────────────────────────────────────────

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """业务错误统一转换为带错误码的 ApiResponse。"""
    logger.info(
        "业务错误 | %s %s | code=%s | msg=%s",
        request.method, request.url.path, exc.code.value, exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse.from_error(exc).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check() -> JSONResponse:
    """验证服务是否正常运行。"""
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "storage": settings.STORAGE_BACKEND,
            "storage_ok": settings.STORAGE_BACKEND == "memory" or await ping_mongo(),
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "playroom.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
