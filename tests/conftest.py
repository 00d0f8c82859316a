"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存中的假连接代替真实弹幕服务器，
用极短的定时器间隔代替生产配置，使单元测试可在无网络环境下快速运行。
"""
from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")

from live_client.core.config import Settings  # noqa: E402
from live_client.protocol import codec  # noqa: E402
from live_client.schemas.messages import AnchorInfo, RoomInfo  # noqa: E402
from live_client.services.room_resolver import LiveApiClient  # noqa: E402

# 测试用定时器间隔（秒）
TICK: float = 0.05


class FakeTransport:
    """模拟弹幕服务器的一条 websocket 连接。"""

    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._queue: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, message: bytes) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        self.sent.append(message)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = self.close_code or 1000
        self._queue.put_nowait(None)

    # ── 服务端动作 ──

    def feed(self, frame: bytes) -> None:
        """服务端推送一帧数据。"""
        self._queue.put_nowait(frame)

    def server_close(self, code: int = 1006, reason: str = "") -> None:
        """服务端关闭连接。"""
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._queue.put_nowait(None)

    def fail(self, error: Exception) -> None:
        """读取时抛出异常。"""
        self._queue.put_nowait(error)

    def __aiter__(self) -> FakeTransport:
        return self

    async def __anext__(self) -> bytes:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item  # type: ignore[return-value]

    # ── 断言辅助 ──

    def frames_with_op(self, operation: int) -> list[bytes]:
        return [f for f in self.sent if codec.HEADER.unpack_from(f)[3] == operation]

    @property
    def heartbeats(self) -> int:
        return len(self.frames_with_op(codec.OP_HEARTBEAT))


class FakeConnector:
    """记录每一次连接尝试，并返回新的 ``FakeTransport``。"""

    def __init__(self) -> None:
        self.urls: list[str] = []
        self.transports: list[FakeTransport] = []
        self.fail_next = 0

    async def __call__(self, url: str) -> FakeTransport:
        self.urls.append(url)
        if self.fail_next:
            self.fail_next -= 1
            raise OSError("connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """轮询等待条件成立，超时则断言失败。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.005)


@pytest.fixture()
def test_settings() -> Settings:
    """直连、关闭粉丝轮询、所有定时器缩短为 ``TICK`` 的配置。"""
    return Settings(
        ROOM_ID=23058,
        DIRECT_CONNECT=True,
        USE_FANS_SERVICE=False,
        USE_TLS=False,
        RECONNECT_DELAY=TICK,
        HEARTBEAT_INTERVAL=TICK,
        GIFT_QUIET_PERIOD=TICK,
        FANS_POLL_INTERVAL=TICK,
    )


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def mock_api() -> MagicMock:
    """mock 掉所有 HTTP 接口。"""
    api = MagicMock(spec=LiveApiClient)
    api.resolve = AsyncMock(
        return_value=RoomInfo(id=5440, url=23058, title="测试直播间", anchor=AnchorInfo(id=9617619, name="主播")),
    )
    api.fetch_fans = AsyncMock()
    api.get_admins = AsyncMock(return_value=[])
    api.aclose = AsyncMock()
    return api
