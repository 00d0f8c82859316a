"""
live_client.services.room_resolver
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

直播间 HTTP 接口客户端 —— 房间号解析、房间信息、房管列表、主播粉丝列表。

基于 ``httpx.AsyncClient``，构造时可注入自定义 client（测试中使用
``httpx.MockTransport``）。所有接口统一返回 ``{"code": 0, "data": ...}``，
``code != 0`` 视为失败。
"""
from __future__ import annotations

from typing import Any

import httpx

from live_client.core.config import Settings, settings as default_settings
from live_client.core.exceptions import FetchError, ResolutionError
from live_client.core.logging import get_logger
from live_client.schemas.messages import AnchorInfo, FansPage, RoomInfo, UserInfo

logger = get_logger(__name__)

FANS_PAGE_SIZE: int = 20


class LiveApiClient:
    """直播间 HTTP 接口客户端。

    Attributes:
        https: 当前是否使用 https 访问接口。
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._client = client or httpx.AsyncClient(timeout=self._settings.HTTP_TIMEOUT)
        self.https = self._settings.USE_TLS

    def use_https(self, use: bool) -> None:
        """切换接口访问协议。"""
        self.https = use

    @property
    def live_base(self) -> str:
        return self._settings.api_url(self._settings.LIVE_API_BASE, self.https)

    @property
    def user_base(self) -> str:
        return self._settings.api_url(self._settings.USER_API_BASE, self.https)

    async def _get_data(self, url: str, params: dict[str, Any]) -> Any:
        """发送 GET 请求并取出 ``data`` 字段。

        Raises:
            FetchError: 网络错误、HTTP 状态码异常、返回体不是合法 JSON 或 ``code != 0``。
        """
        try:
            resp = await self._client.get(url, params=params)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise FetchError(f"请求失败 {url}: {e}") from e
        if not isinstance(body, dict) or body.get("code") != 0:
            msg = body.get("message") or body.get("msg") if isinstance(body, dict) else body
            raise FetchError(f"接口返回错误 {url}: {msg}")
        return body.get("data")

    async def resolve(self, room_ref: int) -> RoomInfo:
        """把短号 / 真实房间号解析为完整房间信息。

        Raises:
            ResolutionError: 房间号无效或任一接口请求失败。
        """
        try:
            init = await self._get_data(
                f"{self.live_base}/room/v1/Room/room_init", {"id": room_ref},
            )
            room_id = int(init["room_id"])
            info = await self._get_data(
                f"{self.live_base}/room/v1/Room/get_info", {"room_id": room_id},
            )
            anchor = await self._get_data(
                f"{self.live_base}/live_user/v1/UserInfo/get_anchor_in_room",
                {"roomid": room_id},
            )
            anchor_info = anchor["info"]
            room = RoomInfo(
                id=room_id,
                url=room_ref,
                title=str(info.get("title", "")),
                anchor=AnchorInfo(id=int(anchor_info["uid"]), name=str(anchor_info.get("uname", ""))),
            )
        except FetchError as e:
            raise ResolutionError(f"房间 {room_ref} 解析失败: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ResolutionError(f"房间 {room_ref} 信息格式异常: {e}") from e
        logger.info("房间已解析 | ref=%s -> id=%s | title=%s", room_ref, room.id, room.title)
        return room

    async def fetch_fans(self, host_id: int, page: int = 1) -> FansPage:
        """获取主播粉丝列表的一页（按关注时间倒序）。

        Raises:
            FetchError: 请求失败或返回格式异常。
        """
        data = await self._get_data(
            f"{self.user_base}/x/relation/followers",
            {"vmid": host_id, "pn": page, "ps": FANS_PAGE_SIZE},
        )
        try:
            return FansPage(
                total=int(data["total"]),
                ids=[int(item["mid"]) for item in data.get("list") or []],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(f"粉丝列表格式异常: {e}") from e

    async def get_admins(self, room_id: int) -> list[UserInfo]:
        """获取房管列表。"""
        data = await self._get_data(
            f"{self.live_base}/xlive/web-room/v1/roomAdmin/get_by_room",
            {"roomid": room_id, "page": 1, "page_size": 100},
        )
        try:
            return [
                UserInfo(id=int(item["uid"]), name=str(item.get("uname", "")))
                for item in (data or {}).get("data") or []
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(f"房管列表格式异常: {e}") from e

    async def aclose(self) -> None:
        """关闭底层 HTTP 连接池。"""
        await self._client.aclose()
