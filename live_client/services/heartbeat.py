"""
live_client.services.heartbeat
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

心跳驱动器 —— 进房成功后立即发送一次心跳，此后每隔固定间隔再发一次。

同一时刻最多只有一个心跳任务：再次 ``start()`` 会先取消旧任务。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from live_client.core.logging import get_logger
from live_client.protocol import codec

logger = get_logger(__name__)


class HeartbeatDriver:
    """周期性发送心跳帧。

    Attributes:
        interval: 心跳间隔（秒）。
        sent: 本驱动器累计发送的心跳次数。
    """

    def __init__(self, send: Callable[[bytes], Awaitable[None]], interval: float) -> None:
        self._send = send
        self.interval = interval
        self.sent = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """（重新）开始心跳循环。"""
        self.stop()
        self._task = asyncio.create_task(self._run(), name="heartbeat")

    def stop(self) -> None:
        """停止心跳循环。未运行时调用是安全的。"""
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while True:
            try:
                await self._send(codec.encode_heartbeat())
            except Exception as e:
                # 连接已断开，交给会话的 close 处理流程重连
                logger.warning("心跳发送失败，停止心跳: %s", e)
                return
            self.sent += 1
            logger.debug("心跳已发送 | 第 %d 次", self.sent)
            await asyncio.sleep(self.interval)
