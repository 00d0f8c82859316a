"""
live_client.schemas.messages
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

弹幕消息与房间信息的 Pydantic 模型。

所有入站消息由编解码器生成，生成后不可变（``frozen=True``）；
礼物合并等需要修改数量的场景一律通过 ``model_copy(update=...)`` 生成新对象。
"""
from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """当前毫秒时间戳。"""
    return int(time.time() * 1000)


class MessageKind(StrEnum):
    """入站消息类型。"""

    CONNECTED = "connected"
    ONLINE = "online"
    DANMAKU = "danmaku"
    GIFT = "gift"
    WELCOME = "welcome"
    WELCOME_GUARD = "welcome_guard"
    GUARD = "guard"
    BLOCK = "block"
    LIVE_STATUS = "live_status"
    UNKNOWN = "unknown"


class UserInfo(BaseModel):
    """消息发送者。"""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="用户 UID")
    name: str = Field(default="", description="用户昵称")


class GiftInfo(BaseModel):
    """礼物详情。"""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="礼物 ID")
    name: str = Field(default="", description="礼物名称")
    count: int = Field(default=1, description="本次赠送数量")
    price: int = Field(default=0, description="单价")


class LiveMessage(BaseModel):
    """入站消息基类。

    Attributes:
        kind: 消息类型标签。
        ts: 消息时间戳（毫秒）。
    """

    model_config = ConfigDict(frozen=True)

    kind: MessageKind
    ts: int = Field(default_factory=now_ms, description="毫秒时间戳")


class ConnectedMessage(LiveMessage):
    """进房成功确认。"""

    kind: MessageKind = MessageKind.CONNECTED


class OnlineMessage(LiveMessage):
    """心跳回包携带的人气值。"""

    kind: MessageKind = MessageKind.ONLINE
    count: int = 0


class DanmakuMessage(LiveMessage):
    """弹幕。"""

    kind: MessageKind = MessageKind.DANMAKU
    user: UserInfo
    content: str = ""


class GiftMessage(LiveMessage):
    """礼物赠送。聚合键为 ``(user.id, gift.id)``。"""

    kind: MessageKind = MessageKind.GIFT
    user: UserInfo
    gift: GiftInfo

    @property
    def aggregation_key(self) -> tuple[int, int]:
        return (self.user.id, self.gift.id)


class WelcomeMessage(LiveMessage):
    """老爷 / 舰长进场欢迎。"""

    kind: MessageKind = MessageKind.WELCOME
    user: UserInfo


class GuardMessage(LiveMessage):
    """上舰。"""

    kind: MessageKind = MessageKind.GUARD
    user: UserInfo
    level: int = 0


class BlockMessage(LiveMessage):
    """房间禁言。"""

    kind: MessageKind = MessageKind.BLOCK
    user: UserInfo


class LiveStatusMessage(LiveMessage):
    """开播 / 下播。"""

    kind: MessageKind = MessageKind.LIVE_STATUS
    status: str


class UnknownMessage(LiveMessage):
    """无法识别的命令，保留原始数据供调用方自行处理。"""

    kind: MessageKind = MessageKind.UNKNOWN
    cmd: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)


class FansUpdate(BaseModel):
    """粉丝列表轮询结果（相对上一次轮询的增量）。"""

    model_config = ConfigDict(frozen=True)

    kind: str = "fans"
    ts: int = Field(default_factory=now_ms)
    total: int = Field(..., description="粉丝总数")
    new_fans: list[int] = Field(default_factory=list, description="新增粉丝 UID")


class FansPage(BaseModel):
    """粉丝列表单页数据。"""

    total: int
    ids: list[int]


class AnchorInfo(BaseModel):
    """主播信息。"""

    id: int
    name: str = ""


class RoomInfo(BaseModel):
    """直播间信息。

    Attributes:
        id: 真实房间号（解析后）。
        url: 调用方传入的原始房间号（可能是短号）。
        title: 房间标题。
        anchor: 主播信息，直连模式下为 None。
    """

    id: int
    url: int
    title: str = ""
    anchor: AnchorInfo | None = None
