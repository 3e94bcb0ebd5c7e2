"""
app.main
~~~~~~~~

应用入口 —— FastAPI（REST）与 Socket.IO（实时通道）共用一个 ASGI 应用。

uvicorn 加载的是 ``app.main:asgi_app``：Socket.IO 处理 ``/socket.io`` 路径，
其余请求（包括 lifespan 事件）转交给 FastAPI。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import stream_endpoints
from app.api.socket_events import create_socket_server, register_socket_events
from app.core.logging import get_logger, request_id_ctx_var, setup_logging
from app.core.rate_limit import limiter
from app.core.security import IdentityVerifier
from app.core.settings import settings
from app.db import close_mongo, connect_mongo, get_database
from app.db.stream_repository import StreamRepository
from app.schemas.api_response import error_response
from app.services.presence import PresenceCoordinator
from app.services.room_fabric import RoomFabric

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)

sio: socketio.AsyncServer = create_socket_server()


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    await connect_mongo()
    coordinator = PresenceCoordinator(
        RoomFabric(sio),
        StreamRepository(get_database()),
        IdentityVerifier(
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            default_avatar=settings.DEFAULT_AVATAR,
        ),
        debounce_seconds=settings.BROADCAST_DEBOUNCE_SECONDS,
        broadcaster_role=settings.BROADCASTER_ROLE,
        default_avatar=settings.DEFAULT_AVATAR,
        chat_rate_limit_interval=settings.CHAT_RATE_LIMIT_INTERVAL,
        chat_max_length=settings.CHAT_MAX_LENGTH,
        orphan_sweep_interval=settings.ORPHAN_SWEEP_INTERVAL_SECONDS,
    )
    register_socket_events(sio, coordinator)
    coordinator.start()
    app.state.coordinator = coordinator
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await coordinator.close()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="直播在线状态与实时广播服务",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

# ── 限流 ──────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源
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
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """为每个 HTTP 请求设置追踪 ID（优先使用客户端传入的 ``X-Request-ID``）。"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    token = request_id_ctx_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(stream_endpoints.router, prefix="/api", tags=["Streams"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse 失败格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    return error_response(500, detail)


@app.get("/health", tags=["System"])
async def health_check() -> JSONResponse:
    """验证服务是否正常运行。"""
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "message": "直播实时服务已就绪",
        },
    )


# Socket.IO 在外层，其余请求转交 FastAPI
asgi_app = socketio.ASGIApp(sio, other_asgi_app=app, socketio_path=settings.SOCKETIO_PATH)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:asgi_app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
