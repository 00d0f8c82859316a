"""
live_client.core.events
~~~~~~~~~~~~~~~~~~~~~~~

会话事件分发器。

事件名是一个封闭集合：生命周期事件（``EventName``）加上所有消息类型
（``MessageKind``）。订阅未知事件名会直接报错，避免拼写错误导致静默丢事件。
"""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from live_client.core.logging import get_logger
from live_client.schemas.messages import MessageKind

logger = get_logger(__name__)

Handler = Callable[..., Any]


class EventName(StrEnum):
    """会话对外发布的生命周期 / 聚合事件。"""

    CONNECT = "connect"
    CLOSE = "close"
    ERROR = "error"
    DATA = "data"
    GIFT_BUNDLE = "giftBundle"
    FANS = "fans"
    FANS_DEGRADED = "fans_degraded"


EVENT_NAMES: frozenset[str] = frozenset(
    {e.value for e in EventName} | {k.value for k in MessageKind},
)


def _validate(name: str) -> str:
    name = str(name)
    if name not in EVENT_NAMES:
        raise ValueError(f"未知事件名: {name!r}")
    return name


class EventEmitter:
    """同步事件分发器。

    回调在事件循环线程内按注册顺序同步执行；回调抛出的异常只记录日志，
    不会中断会话。
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, name: str, handler: Handler) -> Handler:
        """注册事件回调，返回回调本身（可用作装饰器）。"""
        self._handlers[_validate(name)].append(handler)
        return handler

    def off(self, name: str, handler: Handler) -> None:
        """注销事件回调。未注册时忽略。"""
        handlers = self._handlers.get(_validate(name))
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, name: str, *args: Any) -> None:
        """向所有订阅者发布事件。"""
        for handler in list(self._handlers.get(_validate(name), ())):
            try:
                handler(*args)
            except Exception as e:
                logger.warning("事件回调执行失败 | event=%s | %s", name, e, exc_info=True)

    def listener_count(self, name: str) -> int:
        """当前订阅某事件的回调数量。"""
        return len(self._handlers.get(_validate(name), ()))
