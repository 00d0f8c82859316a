"""
live_client.core.exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~~

客户端异常体系。

只有 ``ResolutionError`` 会从 ``RoomSession.init()`` 向调用方抛出；
其余异常在会话内部被转换为生命周期事件或静默重试。
"""
from __future__ import annotations


class LiveClientError(Exception):
    """所有客户端异常的基类。"""


class ResolutionError(LiveClientError):
    """房间号无效或房间信息接口请求失败。"""


class FetchError(LiveClientError):
    """粉丝列表等辅助接口请求失败（网络错误 / 超时 / 返回码异常）。"""


class TransportError(LiveClientError):
    """弹幕长连接出错，包装底层 websockets / OSError 异常。"""


class DecodeError(LiveClientError):
    """弹幕数据包格式错误。仅在编解码器内部使用，不会传递给会话。"""
