"""
live_client.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

本地转发服务 HTTP 接口的应答体。

``ts`` 与弹幕消息的 ``ts`` 使用同一时钟（毫秒），观众端可以据此对齐
接口数据和推送事件。客户端异常按类型映射为业务状态码::

    {"code": 502, "data": [], "msg": "请求失败 ...", "ts": 1700000000000}
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from live_client.core.exceptions import FetchError, LiveClientError, ResolutionError, TransportError
from live_client.schemas.messages import now_ms

T = TypeVar("T")

# 按 MRO 查找，子类未登记时使用父类的状态码
_ERROR_CODES: dict[type[LiveClientError], int] = {
    ResolutionError: 404,
    FetchError: 502,
    TransportError: 503,
    LiveClientError: 500,
}


class ApiResponse(BaseModel, Generic[T]):
    code: int = Field(default=200, description="业务状态码，200 表示成功")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")
    ts: int = Field(default_factory=now_ms, description="服务端时间（毫秒）")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)

    @classmethod
    def from_error(cls, error: LiveClientError, data: Any = None) -> ApiResponse[Any]:
        """把客户端异常转换为失败应答，状态码由异常类型决定。"""
        code = next(_ERROR_CODES[t] for t in type(error).__mro__ if t in _ERROR_CODES)
        return cls.fail(msg=str(error), code=code, data=data)
