"""
live_client.services.gift_aggregator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

礼物连击合并器 —— 把同一观众短时间内连续赠送的同一种礼物合并为一条 ``giftBundle``。

按 ``(发送者 UID, 礼物 ID)`` 建立合并条目，每个条目持有一个静默期定时器：
  - 首次收到某个键的礼物：创建条目并启动定时器
  - 静默期内再次收到：累加数量，取消旧定时器并重新计时
  - 定时器触发：发出合并后的消息并删除条目

所有操作都在事件循环线程内同步执行，``TimerHandle.cancel()`` 之后回调保证不会再运行。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

from live_client.core.logging import get_logger
from live_client.schemas.messages import GiftMessage

logger = get_logger(__name__)

GiftKey = tuple[int, int]


@dataclass
class AggregationEntry:
    """单个合并条目。

    Attributes:
        key: ``(发送者 UID, 礼物 ID)``。
        message: 该键收到的第一条礼物消息（不可变副本）。
        accumulated_count: 已合并的礼物总数。
        timer: 当前静默期定时器。
    """

    key: GiftKey
    message: GiftMessage
    accumulated_count: int
    timer: asyncio.TimerHandle | None = None

    def bundle(self) -> GiftMessage:
        """生成带累计数量的合并消息。"""
        gift = self.message.gift.model_copy(update={"count": self.accumulated_count})
        return self.message.model_copy(update={"gift": gift})


class GiftAggregator:
    """按键去抖的礼物合并器。"""

    def __init__(
        self,
        on_bundle: Callable[[GiftMessage], None],
        quiet_period: float,
    ) -> None:
        self._on_bundle = on_bundle
        self.quiet_period = quiet_period
        self._entries: dict[GiftKey, AggregationEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: GiftKey) -> AggregationEntry | None:
        return self._entries.get(key)

    def add(self, message: GiftMessage) -> None:
        """合并一条礼物消息。必须在事件循环线程内调用。"""
        key = message.aggregation_key
        entry = self._entries.get(key)
        if entry is None:
            entry = AggregationEntry(key=key, message=message, accumulated_count=message.gift.count)
            self._entries[key] = entry
        else:
            entry.accumulated_count += message.gift.count
            if entry.timer is not None:
                entry.timer.cancel()
        entry.timer = asyncio.get_running_loop().call_later(self.quiet_period, self._fire, key)

    def _fire(self, key: GiftKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        entry.timer = None
        logger.debug("礼物合并完成 | key=%s | count=%d", key, entry.accumulated_count)
        self._on_bundle(entry.bundle())

    def flush_all(self) -> None:
        """立即发出所有未结束的合并消息（按创建顺序）。"""
        for key in list(self._entries):
            entry = self._entries[key]
            if entry.timer is not None:
                entry.timer.cancel()
            self._fire(key)

    def clear(self) -> None:
        """丢弃所有未结束的合并条目，不发出任何事件。"""
        if self._entries:
            logger.debug("丢弃 %d 个未完成的礼物合并", len(self._entries))
        for entry in self._entries.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._entries.clear()
