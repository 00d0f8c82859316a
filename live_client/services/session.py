"""
live_client.services.session
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

直播间会话 —— 维护与弹幕服务器的长连接，并把房间事件发布给订阅者。

生命周期::

    IDLE → CONNECTING → JOINED → CLOSING ─(延迟重连)→ CONNECTING ...
                                    └─ terminate() → TERMINATED

- 连接建立后发送进房包并发布 ``connect``
- 收到进房确认（``connected``）后启动心跳
- 礼物消息先交给 ``GiftAggregator`` 合并，再原样发布
- 连接关闭 / 出错时发布 ``close`` / ``error``，未终止则在固定延迟后重连
- 只有 ``terminate()`` 能永久停止会话

所有状态变更都发生在同一个事件循环中（传输层回调或定时器回调），
因此内部状态无需加锁。
"""
from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from live_client.core.config import Settings, settings as default_settings
from live_client.core.events import EventEmitter, EventName
from live_client.core.exceptions import TransportError
from live_client.core.logging import RoomLogAdapter, get_logger, room_logger
from live_client.protocol import codec
from live_client.schemas.messages import (
    FansUpdate,
    GiftMessage,
    LiveMessage,
    MessageKind,
    RoomInfo,
    UserInfo,
)
from live_client.services.audience_poller import AudiencePoller
from live_client.services.gift_aggregator import GiftAggregator
from live_client.services.heartbeat import HeartbeatDriver
from live_client.services.room_resolver import LiveApiClient

logger = get_logger(__name__)


class Transport(Protocol):
    """会话所需的最小传输层接口（``websockets`` 的 ``ClientConnection`` 满足此接口）。"""

    close_code: int | None
    close_reason: str | None

    async def send(self, message: bytes) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[Transport]]


class SessionState(StrEnum):
    """会话连接状态。"""

    IDLE = "idle"
    CONNECTING = "connecting"
    JOINED = "joined"
    CLOSING = "closing"
    TERMINATED = "terminated"


# 合法状态迁移表（同状态迁移总是允许）
_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING, SessionState.TERMINATED}),
    SessionState.CONNECTING: frozenset({SessionState.JOINED, SessionState.CLOSING, SessionState.TERMINATED}),
    SessionState.JOINED: frozenset({SessionState.CLOSING, SessionState.TERMINATED}),
    SessionState.CLOSING: frozenset({SessionState.CONNECTING, SessionState.TERMINATED}),
    SessionState.TERMINATED: frozenset(),
}


def random_user_id() -> int:
    """随机生成进房用户 ID，范围 [1e15, 3e15)。"""
    return 10**15 + int(2 * 10**15 * random.random())


async def _default_connector(url: str) -> Transport:
    return await ws_connect(url)


class RoomSession(EventEmitter):
    """单个直播间的弹幕会话。

    Attributes:
        info: 房间信息（``init()`` 之后包含真实房间号、标题和主播）。
        user_id: 进房使用的用户 ID。
        direct_connect: 是否跳过房间号解析。
        use_fans_service: 是否轮询主播粉丝列表。
        state: 当前连接状态。
        is_terminated: 是否已被永久终止。
    """

    def __init__(
        self,
        room_id: int | None = None,
        user_id: int | None = None,
        direct_connect: bool | None = None,
        use_fans_service: bool | None = None,
        *,
        use_tls: bool | None = None,
        api: LiveApiClient | None = None,
        connector: Connector | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        self._settings = cfg = settings or default_settings

        room_ref = room_id if room_id is not None else cfg.ROOM_ID
        self.info = RoomInfo(id=room_ref, url=room_ref)
        self.user_id: int = user_id or cfg.USER_ID or random_user_id()
        self.direct_connect = cfg.DIRECT_CONNECT if direct_connect is None else direct_connect
        self.use_fans_service = cfg.USE_FANS_SERVICE if use_fans_service is None else use_fans_service
        self.https = cfg.USE_TLS if use_tls is None else use_tls

        self._api = api or LiveApiClient(settings=cfg)
        self._api.use_https(self.https)
        self._connector: Connector = connector or _default_connector

        self.state = SessionState.IDLE
        self.is_terminated = False

        self._transport: Transport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

        self.heartbeat = HeartbeatDriver(self._send, cfg.HEARTBEAT_INTERVAL)
        self.gifts = GiftAggregator(self._on_gift_bundle, cfg.GIFT_QUIET_PERIOD)
        self.poller: AudiencePoller | None = None

    # ── 状态 ──────────────────────────────────────────────────────────

    def _set_state(self, new: SessionState) -> None:
        if new == self.state:
            return
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"非法的会话状态迁移: {self.state} -> {new}")
        self.log.debug("会话状态 | %s -> %s", self.state, new)
        self.state = new

    def _mark_closing(self) -> None:
        if self.state in (SessionState.CONNECTING, SessionState.JOINED):
            self._set_state(SessionState.CLOSING)

    @property
    def connected(self) -> bool:
        """传输层是否已打开。"""
        return self._transport is not None

    @property
    def log(self) -> RoomLogAdapter:
        return room_logger(logger, self.info.id)

    @property
    def url(self) -> str:
        return self._settings.ws_url(self.https)

    def get_info(self) -> RoomInfo:
        return self.info

    async def get_admin(self) -> list[UserInfo]:
        """获取房管列表。"""
        return await self._api.get_admins(self.info.id)

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def init(self) -> RoomSession:
        """解析房间信息（直连模式跳过）并开始连接。

        Raises:
            ResolutionError: 房间号解析失败，不会自动重试。
        """
        if not self.direct_connect:
            self.info = await self._api.resolve(self.info.url)
        await self.connect()
        return self

    async def connect(self) -> None:
        """打开到弹幕服务器的连接；连接过程在后台任务中进行。

        Raises:
            RuntimeError: 当前已有连接。请使用 ``reconnect()``。
        """
        if self.is_terminated:
            return
        if self._reader_task is not None:
            raise RuntimeError("会话已连接，请使用 reconnect()")
        self._set_state(SessionState.CONNECTING)
        self.log.info("正在连接弹幕服务器 | url=%s", self.url)
        self._reader_task = asyncio.create_task(self._run_transport(self.url), name="room-reader")
        if self.use_fans_service:
            self._start_poller()

    async def disconnect(self) -> None:
        """取消所有定时器并关闭连接。未连接时调用是安全的。"""
        self._cancel(self._reconnect_task)
        self._reconnect_task = None
        self.heartbeat.stop()
        if self.poller is not None:
            self.poller.stop()
        if self._settings.FLUSH_GIFTS_ON_DISCONNECT:
            self.gifts.flush_all()
        else:
            self.gifts.clear()

        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        self._cancel(reader)

        self._mark_closing()

        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug("关闭连接时出错: %s", e)
            self.emit(EventName.CLOSE, 1000, "client disconnect")

    async def reconnect(self) -> None:
        """断开当前连接，并在固定延迟后重新连接。"""
        await self.disconnect()
        if self.is_terminated:
            return
        self.log.info("%.1f 秒后重连", self._settings.RECONNECT_DELAY)
        self._reconnect_task = asyncio.create_task(self._delayed_connect(), name="room-reconnect")

    async def terminate(self) -> None:
        """永久停止会话。可重复调用。"""
        if self.is_terminated:
            return
        self.is_terminated = True
        await self.disconnect()
        self._set_state(SessionState.TERMINATED)
        self.log.info("会话已终止")

    async def aclose(self) -> None:
        """终止会话并释放 HTTP 连接池。"""
        await self.terminate()
        await self._api.aclose()

    async def use_tls(self, use: bool) -> None:
        """切换加密 / 明文连接。已连接时会触发重连。"""
        if self.https == use:
            return
        self.https = use
        self._api.use_https(use)
        if self._reader_task is not None or self._reconnect_task is not None:
            await self.reconnect()

    async def _delayed_connect(self) -> None:
        await asyncio.sleep(self._settings.RECONNECT_DELAY)
        self._reconnect_task = None
        await self.connect()

    @staticmethod
    def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ── 发送 ──────────────────────────────────────────────────────────

    async def _send(self, frame: bytes) -> None:
        transport = self._transport
        if transport is None:
            logger.debug("连接未打开，丢弃待发送数据")
            return
        await transport.send(frame)

    async def send_join_room(self) -> None:
        """发送进房包。"""
        await self._send(codec.encode_join(self.info.id, self.user_id))

    def send_heartbeat(self) -> None:
        """立即发送心跳，并在此后按固定间隔循环发送直到断开。"""
        if self.is_terminated or self._transport is None:
            return
        self.heartbeat.start()

    # ── 传输层回调 ────────────────────────────────────────────────────

    async def _run_transport(self, url: str) -> None:
        try:
            transport = await self._connector(url)
        except Exception as e:
            if self._reader_task is asyncio.current_task():
                self._reader_task = None
            self._mark_closing()
            await self._handle_error(TransportError(f"连接失败: {e}"))
            return

        if self.is_terminated:
            await transport.close()
            return
        self._transport = transport

        error: TransportError | None = None
        try:
            await self._handle_open()
            async for frame in transport:
                self._handle_message(frame)
        except ConnectionClosed:
            pass
        except Exception as e:
            self.log.warning("弹幕连接异常: %s", e, exc_info=True)
            error = TransportError(str(e))

        if self._transport is not transport:
            # 已被 disconnect() 接管
            return
        self._transport = None
        self._reader_task = None
        self._mark_closing()

        if error is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug("关闭连接时出错: %s", e)
            await self._handle_error(error)
        else:
            await self._handle_close(transport.close_code, transport.close_reason or "")

    async def _handle_open(self) -> None:
        await self.send_join_room()
        self._set_state(SessionState.JOINED)
        self.log.info("已进入直播间 | uid=%s", self.user_id)
        self.emit(EventName.CONNECT)

    def _handle_message(self, frame: bytes) -> None:
        for message in codec.decode(frame):
            self._dispatch(message)

    def _dispatch(self, message: LiveMessage) -> None:
        if message.kind == MessageKind.CONNECTED:
            self.send_heartbeat()
        elif message.kind == MessageKind.GIFT and isinstance(message, GiftMessage):
            self.gifts.add(message)
        self.emit(EventName.DATA, message)
        self.emit(message.kind, message)

    async def _handle_close(self, code: int | None, reason: str) -> None:
        self.log.info("弹幕连接已关闭 | code=%s | reason=%s", code, reason)
        self.emit(EventName.CLOSE, code, reason)
        if not self.is_terminated:
            await self.reconnect()

    async def _handle_error(self, error: TransportError) -> None:
        self.log.warning("弹幕连接出错 | %s", error)
        self.emit(EventName.ERROR, error)
        if not self.is_terminated:
            await self.reconnect()

    # ── 聚合事件 ──────────────────────────────────────────────────────

    def _on_gift_bundle(self, message: GiftMessage) -> None:
        self.emit(EventName.GIFT_BUNDLE, message)

    def _on_fans(self, update: FansUpdate) -> None:
        self.emit(EventName.DATA, update)
        self.emit(EventName.FANS, update)

    def _on_fans_degraded(self, detail: dict) -> None:
        self.emit(EventName.FANS_DEGRADED, detail)

    def _start_poller(self) -> None:
        anchor = self.info.anchor
        if anchor is None:
            self.log.warning("未知主播信息（直连模式？），跳过粉丝轮询")
            return
        if self.poller is None or self.poller.host_id != anchor.id:
            self.poller = AudiencePoller(
                fetch_page=self._api.fetch_fans,
                host_id=anchor.id,
                on_update=self._on_fans,
                interval=self._settings.FANS_POLL_INTERVAL,
                failure_threshold=self._settings.FANS_FAILURE_THRESHOLD,
                on_degraded=self._on_fans_degraded,
            )
        self.poller.start()
