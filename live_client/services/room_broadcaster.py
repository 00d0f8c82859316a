"""
live_client.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 转发器 —— 把会话事件以 JSON 形式推送给本地所有订阅的观众端。
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import WebSocket
from pydantic import BaseModel

from live_client.core.events import EventName
from live_client.core.logging import get_logger
from live_client.services.session import RoomSession

logger = get_logger(__name__)

# 转发给观众端的事件
RELAYED_EVENTS: tuple[EventName, ...] = (
    EventName.CONNECT,
    EventName.CLOSE,
    EventName.DATA,
    EventName.GIFT_BUNDLE,
)


def to_envelope(event: str, *args: Any) -> str:
    """把一个会话事件序列化为 ``{"event": ..., "data": ...}`` 文本。"""
    if not args:
        data: Any = None
    elif len(args) == 1 and isinstance(args[0], BaseModel):
        data = args[0].model_dump(mode="json")
    else:
        data = [str(a) if not isinstance(a, (int, float, str, type(None))) else a for a in args]
    return json.dumps({"event": str(event), "data": data}, ensure_ascii=False)


class RoomBroadcaster:
    """WebSocket 转发器。

    Attributes:
        active_connections: 当前在线的所有观众端连接。
    """

    def __init__(self) -> None:
        self.active_connections: set[WebSocket] = set()
        self._pending: set[asyncio.Task[None]] = set()

    async def connect(self, websocket: WebSocket) -> None:
        """接受新连接并加入在线集合。"""
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        """从在线集合移除断开的连接。"""
        self.active_connections.discard(websocket)

    async def broadcast(self, message: str) -> None:
        """向所有在线观众端广播消息。"""
        targets = list(self.active_connections)
        results = await asyncio.gather(*(ws.send_text(message) for ws in targets), return_exceptions=True)
        for ws, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("广播失败，移除断开的连接")
                self.active_connections.discard(ws)

    def attach(self, session: RoomSession) -> None:
        """订阅会话事件并转发。"""
        for name in RELAYED_EVENTS:
            session.on(name, self._relay(name))

    def _relay(self, name: EventName):
        def handler(*args: Any) -> None:
            if not self.active_connections:
                return
            task = asyncio.get_running_loop().create_task(self.broadcast(to_envelope(name, *args)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return handler

    @property
    def online_count(self) -> int:
        """当前在线观众端数量。"""
        return len(self.active_connections)
