"""
live_client.services.audience_poller
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

粉丝列表轮询器 —— 定期拉取主播粉丝列表第一页，计算相对已知集合的新增粉丝。

- 首次拉取只建立基线，不上报任何新增（避免启动时刷屏）
- 已知集合只增不减
- 拉取失败静默忽略，按正常间隔继续重试；可选在连续失败达到阈值时发出一次降级事件
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from live_client.core.exceptions import FetchError
from live_client.core.logging import get_logger
from live_client.schemas.messages import FansPage, FansUpdate

logger = get_logger(__name__)

FetchPage = Callable[[int, int], Awaitable[FansPage]]


class AudiencePoller:
    """粉丝列表轮询器。

    Attributes:
        host_id: 主播 UID。
        interval: 轮询间隔（秒）。
        known_ids: 已见过的粉丝 UID 集合。
        total: 最近一次拉取到的粉丝总数。
        failures: 当前连续失败次数。
    """

    def __init__(
        self,
        fetch_page: FetchPage,
        host_id: int,
        on_update: Callable[[FansUpdate], None],
        interval: float,
        failure_threshold: int = 0,
        on_degraded: Callable[[dict], None] | None = None,
    ) -> None:
        self._fetch_page = fetch_page
        self.host_id = host_id
        self._on_update = on_update
        self.interval = interval
        self.failure_threshold = failure_threshold
        self._on_degraded = on_degraded
        self.known_ids: set[int] = set()
        self.total = 0
        self.failures = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """（重新）开始轮询。第一次拉取立即执行。"""
        self.stop()
        self._task = asyncio.create_task(self._run(), name="audience-poller")

    def stop(self) -> None:
        """停止轮询。已知集合保留，重连后继续按增量上报。"""
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while True:
            try:
                await self.fetch_fans()
            except Exception as e:
                logger.warning("粉丝列表轮询异常，下个周期重试: %s", e, exc_info=True)
                self._record_failure(e)
            await asyncio.sleep(self.interval)

    async def fetch_fans(self) -> FansUpdate | None:
        """拉取一次粉丝列表并上报增量。失败时返回 None。"""
        try:
            page = await self._fetch_page(self.host_id, 1)
        except FetchError as e:
            self._record_failure(e)
            return None

        self.failures = 0
        baseline = not self.known_ids
        new_fans: list[int] = []
        for fan in page.ids:
            if fan in self.known_ids:
                continue
            self.known_ids.add(fan)
            if not baseline:
                new_fans.append(fan)
        self.total = page.total

        update = FansUpdate(total=page.total, new_fans=new_fans)
        if new_fans:
            logger.info("新增粉丝 %d 位 | total=%d", len(new_fans), page.total)
        self._on_update(update)
        return update

    def _record_failure(self, error: Exception) -> None:
        self.failures += 1
        logger.debug("粉丝列表拉取失败（第 %d 次）: %s", self.failures, error)
        if self._on_degraded is not None and self.failure_threshold > 0 and self.failures == self.failure_threshold:
            logger.warning("粉丝列表连续 %d 次拉取失败", self.failures)
            self._on_degraded({"failures": self.failures, "error": str(error)})
