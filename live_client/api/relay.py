"""
live_client.api.relay
~~~~~~~~~~~~~~~~~~~~~

本地转发接口。

端点:
  - ``GET /api/room``   → 当前房间信息与连接状态
  - ``GET /api/admins`` → 房管列表
  - ``WS  /ws/relay``   → 实时推送会话事件（JSON）
"""
from __future__ import annotations

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from live_client.core.exceptions import FetchError
from live_client.core.logging import get_logger
from live_client.schemas.api_response import ApiResponse
from live_client.schemas.messages import RoomInfo, UserInfo
from live_client.services.room_broadcaster import RoomBroadcaster
from live_client.services.session import RoomSession

logger = get_logger(__name__)

router: APIRouter = APIRouter()


class RoomStatusData(BaseModel):
    """房间连接状态。"""

    room: RoomInfo = Field(..., description="房间信息")
    state: str = Field(..., description="会话状态")
    user_id: int = Field(..., description="进房用户 ID")
    viewers: int = Field(..., description="本地观众端连接数")


@router.get("/api/room", summary="获取房间信息")
async def room_status(request: Request) -> ApiResponse[RoomStatusData]:
    session: RoomSession = request.app.state.session
    broadcaster: RoomBroadcaster = request.app.state.broadcaster
    return ApiResponse.ok(
        data=RoomStatusData(
            room=session.get_info(),
            state=str(session.state),
            user_id=session.user_id,
            viewers=broadcaster.online_count,
        ),
    )


@router.get("/api/admins", summary="获取房管列表")
async def room_admins(request: Request) -> ApiResponse[list[UserInfo]]:
    session: RoomSession = request.app.state.session
    try:
        admins = await session.get_admin()
    except FetchError as e:
        logger.warning("房管列表获取失败: %s", e)
        return ApiResponse.from_error(e, data=[])
    return ApiResponse.ok(data=admins)


@router.websocket("/ws/relay")
async def relay_endpoint(websocket: WebSocket) -> None:
    """观众端订阅入口。只推送，不处理客户端发来的内容。"""
    broadcaster: RoomBroadcaster = websocket.app.state.broadcaster
    await broadcaster.connect(websocket)
    logger.info("观众端已连接 | 在线: %d", broadcaster.online_count)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)
        logger.info("观众端已断开 | 在线: %d", broadcaster.online_count)
