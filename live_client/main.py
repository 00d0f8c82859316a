"""
live_client.main
~~~~~~~~~~~~~~~~

FastAPI 应用入口 —— 启动时连接配置中的直播间，并把事件转发给本地观众端。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from live_client.api import relay
from live_client.core.config import settings
from live_client.core.events import EventName
from live_client.core.exceptions import LiveClientError
from live_client.core.logging import get_logger, setup_logging
from live_client.schemas.api_response import ApiResponse
from live_client.services.room_broadcaster import RoomBroadcaster
from live_client.services.session import RoomSession

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """创建会话并连接；关闭时永久终止会话。"""
    session = RoomSession()
    broadcaster = RoomBroadcaster()
    broadcaster.attach(session)
    session.on(EventName.GIFT_BUNDLE, lambda m: logger.info(
        "礼物 | %s 赠送 %s x%d", m.user.name, m.gift.name, m.gift.count,
    ))
    app.state.session = session
    app.state.broadcaster = broadcaster

    await session.init()
    logger.info(
        "🚀 应用已启动 | env=%s | room=%s | title=%s",
        settings.ENVIRONMENT,
        session.info.id,
        session.info.title,
    )
    yield
    await session.aclose()
    logger.info("👋 应用已关闭")


app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="直播间弹幕客户端 —— 本地事件转发",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(relay.router, tags=["Relay"])


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    if isinstance(exc, LiveClientError):
        response = ApiResponse.from_error(exc)
    else:
        detail = str(exc) if not settings.is_prod else "服务器内部错误"
        response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(status_code=500, content=response.model_dump())


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务与弹幕连接状态。"""
    session: RoomSession = request.app.state.session
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "session_state": str(session.state),
            "connected": session.connected,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "live_client.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.effective_log_level.lower(),
    )
