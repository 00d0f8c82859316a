"""
live_client.core.logging
~~~~~~~~~~~~~~~~~~~~~~~~

日志配置。每条日志带上所属直播间号（``room`` 字段），同一进程内
多个会话的输出可以按房间区分；与房间无关的日志显示为 ``-``。

会话内部通过 ``room_logger(logger, room_id)`` 绑定房间号，
其余模块照常使用 ``get_logger(__name__)``。
"""
from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

from live_client.core.config import settings

_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | room=%(room)s | %(name)s | %(message)s"
_DATE_FORMAT: str = "%H:%M:%S"

# 心跳、轮询请求都很频繁，这些库的 INFO 日志只会刷屏
_QUIET_LOGGERS: tuple[str, ...] = ("httpcore", "httpx", "websockets")


class _RoomFilter(logging.Filter):
    """为没有 ``room`` 字段的记录补上占位值，保证格式串可用。"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "room"):
            record.room = "-"
        return True


class RoomLogAdapter(logging.LoggerAdapter):
    """把房间号写入每条记录的 ``room`` 字段。"""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def setup_logging(level: str | None = None) -> None:
    """配置根 logger，应在进程启动时调用一次。

    Args:
        level: 日志级别，为 None 时取 ``settings.effective_log_level``。
    """
    name = (level or settings.effective_log_level).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(_RoomFilter())

    for quiet in _QUIET_LOGGERS:
        logging.getLogger(quiet).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def room_logger(logger: logging.Logger, room_id: int | str) -> RoomLogAdapter:
    """返回绑定了房间号的 logger。"""
    return RoomLogAdapter(logger, {"room": room_id})
