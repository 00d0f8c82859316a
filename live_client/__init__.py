"""
live_client
~~~~~~~~~~~

直播间弹幕客户端 —— 维持与弹幕服务器的长连接，并以事件流的形式输出房间事件。
"""
from live_client.services.session import RoomSession

__all__ = ["RoomSession"]
