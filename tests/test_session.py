"""
tests.test_session
~~~~~~~~~~~~~~~~~~

RoomSession 生命周期单元测试：连接 / 进房 / 心跳 / 断线重连 / 终止 / 消息分发。

所有连接都由 ``FakeConnector`` 提供，定时器间隔缩短为 ``TICK``。
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from conftest import TICK, FakeConnector, wait_until
from live_client.core.config import Settings
from live_client.core.events import EventName
from live_client.core.exceptions import ResolutionError, TransportError
from live_client.protocol import codec
from live_client.schemas.messages import FansPage, FansUpdate, GiftMessage, MessageKind
from live_client.services.session import RoomSession, SessionState, random_user_id


def danmaku_cmd(uid: int, text: str) -> dict:
    return {"cmd": "DANMU_MSG", "info": [[0], text, [uid, f"user{uid}"]]}


def gift_cmd(uid: int, gift_id: int, num: int) -> dict:
    return {
        "cmd": "SEND_GIFT",
        "data": {"uid": uid, "uname": f"user{uid}", "giftId": gift_id, "giftName": "辣条", "num": num, "price": 100},
    }


JOIN_REPLY: bytes = codec.encode_packet(codec.OP_JOIN_REPLY)


def make_session(settings: Settings, connector: FakeConnector, api: MagicMock, **kwargs) -> RoomSession:
    return RoomSession(settings=settings, connector=connector, api=api, **kwargs)


async def joined(session: RoomSession, connector: FakeConnector, count: int = 1) -> None:
    """等待第 ``count`` 条连接建立并完成进房。"""
    await wait_until(lambda: len(connector.transports) >= count and session.state == SessionState.JOINED)


# ── 连接与进房 ────────────────────────────────────────────────────────

class TestConnect:
    """测试连接建立流程。"""

    @pytest.mark.asyncio
    async def test_open_sends_join_and_emits_connect(self, test_settings, connector, mock_api) -> None:
        """连接建立后应发送进房包并发布 connect 事件。"""
        session = make_session(test_settings, connector, mock_api, user_id=1234)
        on_connect = MagicMock()
        session.on(EventName.CONNECT, on_connect)

        await session.init()
        await joined(session, connector)

        join_frames = connector.latest.frames_with_op(codec.OP_JOIN)
        assert len(join_frames) == 1
        body = json.loads(join_frames[0][codec.HEADER_LEN:])
        assert body["roomid"] == 23058
        assert body["uid"] == 1234
        on_connect.assert_called_once_with()
        mock_api.resolve.assert_not_called()
        await session.terminate()

    @pytest.mark.asyncio
    async def test_init_resolves_room_when_not_direct(self, test_settings, connector, mock_api) -> None:
        """非直连模式下，init 应先解析房间号再用真实房间号进房。"""
        session = make_session(test_settings, connector, mock_api, direct_connect=False)

        await session.init()
        await joined(session, connector)

        mock_api.resolve.assert_awaited_once_with(23058)
        assert session.get_info().id == 5440
        assert session.get_info().title == "测试直播间"
        body = json.loads(connector.latest.frames_with_op(codec.OP_JOIN)[0][codec.HEADER_LEN:])
        assert body["roomid"] == 5440
        await session.terminate()

    @pytest.mark.asyncio
    async def test_init_propagates_resolution_error(self, test_settings, connector, mock_api) -> None:
        """房间解析失败应直接抛出，且不尝试连接。"""
        mock_api.resolve.side_effect = ResolutionError("房间不存在")
        session = make_session(test_settings, connector, mock_api, direct_connect=False)

        with pytest.raises(ResolutionError):
            await session.init()

        await asyncio.sleep(TICK * 2)
        assert connector.urls == []
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_connect_while_connected_is_caller_error(self, test_settings, connector, mock_api) -> None:
        """已连接时再次 connect 应报错。"""
        session = make_session(test_settings, connector, mock_api)
        await session.connect()

        with pytest.raises(RuntimeError):
            await session.connect()
        await session.terminate()

    @pytest.mark.asyncio
    async def test_endpoint_follows_tls_flag(self, test_settings, connector, mock_api) -> None:
        """切换加密方式会触发重连，并使用新的端点。"""
        session = make_session(test_settings, connector, mock_api)
        await session.connect()
        await joined(session, connector)

        await session.use_tls(True)
        await joined(session, connector, count=2)

        assert connector.urls[0] == "ws://broadcastlv.chat.bilibili.com:2244/sub"
        assert connector.urls[1] == "wss://broadcastlv.chat.bilibili.com:2245/sub"
        mock_api.use_https.assert_called_with(True)
        await session.terminate()

    def test_random_user_id_range(self) -> None:
        for _ in range(100):
            assert 10**15 <= random_user_id() < 3 * 10**15


# ── 心跳 ──────────────────────────────────────────────────────────────

class TestHeartbeat:
    """测试心跳循环。"""

    @pytest.mark.asyncio
    async def test_heartbeat_loop_starts_after_join_reply(self, test_settings, connector, mock_api) -> None:
        """收到进房确认后立即发送心跳，并按间隔持续发送。"""
        session = make_session(test_settings, connector, mock_api)
        await session.connect()
        await joined(session, connector)
        transport = connector.latest
        assert transport.heartbeats == 0

        transport.feed(JOIN_REPLY)
        await wait_until(lambda: transport.heartbeats >= 3)
        await session.terminate()

    @pytest.mark.asyncio
    async def test_no_heartbeat_after_disconnect(self, test_settings, connector, mock_api) -> None:
        """断开后不应再发送任何心跳。"""
        session = make_session(test_settings, connector, mock_api)
        await session.connect()
        await joined(session, connector)
        transport = connector.latest
        transport.feed(JOIN_REPLY)
        await wait_until(lambda: transport.heartbeats >= 2)

        await session.disconnect()
        sent = len(transport.sent)
        await asyncio.sleep(TICK * 4)

        assert len(transport.sent) == sent
        assert not session.heartbeat.running
        await session.terminate()

    @pytest.mark.asyncio
    async def test_repeated_join_reply_keeps_single_loop(self, test_settings, connector, mock_api) -> None:
        """重复的进房确认只会重启心跳，不会叠加出多个循环。"""
        settings = test_settings.model_copy(update={"HEARTBEAT_INTERVAL": 10.0})
        session = make_session(settings, connector, mock_api)
        await session.connect()
        await joined(session, connector)
        transport = connector.latest

        transport.feed(JOIN_REPLY + JOIN_REPLY + JOIN_REPLY)
        await wait_until(lambda: transport.heartbeats >= 1)
        await asyncio.sleep(TICK)

        # 尚未运行的旧心跳任务被取消，长间隔内只会发出一次
        assert transport.heartbeats == 1
        assert session.heartbeat.running
        await session.terminate()


# ── 消息分发 ──────────────────────────────────────────────────────────

class TestDispatch:
    """测试入站消息的分发。"""

    @pytest.mark.asyncio
    async def test_batched_frame_dispatched_in_order(self, test_settings, connector, mock_api) -> None:
        """一帧解出多条消息时，应逐条按顺序发布到 data 与各自类型事件。"""
        session = make_session(test_settings, connector, mock_api)
        data_events: list = []
        danmaku_events: list = []
        gift_events: list = []
        session.on(EventName.DATA, data_events.append)
        session.on(MessageKind.DANMAKU, danmaku_events.append)
        session.on(MessageKind.GIFT, gift_events.append)

        await session.connect()
        await joined(session, connector)
        connector.latest.feed(
            codec.encode_command(danmaku_cmd(1, "第一条"))
            + codec.encode_command(gift_cmd(2, 1, 5))
            + codec.encode_command(danmaku_cmd(3, "第二条")),
        )
        await wait_until(lambda: len(data_events) == 3)

        assert [m.kind for m in data_events] == [MessageKind.DANMAKU, MessageKind.GIFT, MessageKind.DANMAKU]
        assert [m.content for m in danmaku_events] == ["第一条", "第二条"]
        assert len(gift_events) == 1
        await session.terminate()

    @pytest.mark.asyncio
    async def test_gift_aggregated_before_publish(self, test_settings, connector, mock_api) -> None:
        """gift 事件发布时，该礼物应已进入合并器。"""
        session = make_session(test_settings, connector, mock_api)
        seen_in_aggregator: list[bool] = []
        session.on(MessageKind.GIFT, lambda m: seen_in_aggregator.append(m.aggregation_key in session.gifts))
        bundles: list[GiftMessage] = []
        session.on(EventName.GIFT_BUNDLE, bundles.append)

        await session.connect()
        await joined(session, connector)
        connector.latest.feed(codec.encode_command(gift_cmd(7, 1, 3)) + codec.encode_command(gift_cmd(7, 1, 5)))
        await wait_until(lambda: len(bundles) == 1)

        assert seen_in_aggregator == [True, True]
        assert bundles[0].gift.count == 8
        await session.terminate()

    @pytest.mark.asyncio
    async def test_malformed_frame_is_dropped(self, test_settings, connector, mock_api) -> None:
        """格式错误的帧被丢弃，会话保持连接。"""
        session = make_session(test_settings, connector, mock_api)
        data_events: list = []
        session.on(EventName.DATA, data_events.append)
        await session.connect()
        await joined(session, connector)

        connector.latest.feed(b"\x00\x01garbage")
        connector.latest.feed(codec.encode_command(danmaku_cmd(1, "还在")))
        await wait_until(lambda: len(data_events) == 1)

        assert session.state == SessionState.JOINED
        assert len(connector.transports) == 1
        await session.terminate()

    @pytest.mark.asyncio
    async def test_wrongly_typed_command_stays_connected(self, test_settings, connector, mock_api) -> None:
        """字段类型错误的命令按未知消息发布，不触发 error 或重连。"""
        session = make_session(test_settings, connector, mock_api)
        errors: list = []
        unknown: list = []
        session.on(EventName.ERROR, errors.append)
        session.on(MessageKind.UNKNOWN, unknown.append)
        await session.connect()
        await joined(session, connector)

        connector.latest.feed(codec.encode_command({"cmd": "SEND_GIFT", "data": [1]}))
        connector.latest.feed(
            codec.encode_packet(codec.OP_MESSAGE, b'{"cmd":"SEND_GIFT","data":{"uid":1,"giftId":1,"num":1e400}}')
        )
        await wait_until(lambda: len(unknown) == 2)
        await asyncio.sleep(TICK * 3)

        assert errors == []
        assert len(connector.transports) == 1
        assert session.state == SessionState.JOINED
        assert len(session.gifts) == 0
        await session.terminate()

    @pytest.mark.asyncio
    async def test_subscriber_error_does_not_break_session(self, test_settings, connector, mock_api) -> None:
        """订阅者抛出的异常不影响后续订阅者和会话。"""
        session = make_session(test_settings, connector, mock_api)
        received: list = []
        session.on(EventName.DATA, MagicMock(side_effect=ValueError("boom")))
        session.on(EventName.DATA, received.append)
        await session.connect()
        await joined(session, connector)

        connector.latest.feed(codec.encode_command(danmaku_cmd(1, "你好")))
        await wait_until(lambda: len(received) == 1)

        assert session.state == SessionState.JOINED
        await session.terminate()


# ── 断线重连 ──────────────────────────────────────────────────────────

class TestReconnect:
    """测试断线重连与终止。"""

    @pytest.mark.asyncio
    async def test_each_close_schedules_one_reconnect(self, test_settings, connector, mock_api) -> None:
        """N 次服务端断开应产生 N 次重连，每次都发布 close。"""
        session = make_session(test_settings, connector, mock_api)
        closes: list[tuple] = []
        session.on(EventName.CLOSE, lambda code, reason: closes.append((code, reason)))

        await session.connect()
        for i in range(3):
            await joined(session, connector, count=i + 1)
            connector.latest.server_close(1006, f"drop-{i}")
        await joined(session, connector, count=4)
        await asyncio.sleep(TICK * 3)

        assert len(connector.transports) == 4
        assert closes == [(1006, "drop-0"), (1006, "drop-1"), (1006, "drop-2")]
        await session.terminate()

    @pytest.mark.asyncio
    async def test_reconnect_waits_fixed_delay(self, test_settings, connector, mock_api) -> None:
        """重连不会早于固定延迟发生。"""
        settings = test_settings.model_copy(update={"RECONNECT_DELAY": TICK * 4})
        session = make_session(settings, connector, mock_api)
        await session.connect()
        await joined(session, connector)

        connector.latest.server_close(1001, "going away")
        await asyncio.sleep(TICK * 2)
        assert len(connector.transports) == 1
        assert session.state == SessionState.CLOSING

        await joined(session, connector, count=2)
        await session.terminate()

    @pytest.mark.asyncio
    async def test_transport_error_emits_error_and_reconnects(self, test_settings, connector, mock_api) -> None:
        """读取异常应发布 error（TransportError）并重连。"""
        session = make_session(test_settings, connector, mock_api)
        errors: list = []
        session.on(EventName.ERROR, errors.append)
        await session.connect()
        await joined(session, connector)

        connector.latest.fail(RuntimeError("socket reset"))
        await joined(session, connector, count=2)

        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)
        assert connector.transports[0].closed
        await session.terminate()

    @pytest.mark.asyncio
    async def test_connect_failure_retries(self, test_settings, connector, mock_api) -> None:
        """连接失败也走 error → 重连流程，会话不会自行终止。"""
        connector.fail_next = 2
        session = make_session(test_settings, connector, mock_api)
        errors: list = []
        session.on(EventName.ERROR, errors.append)

        await session.connect()
        await joined(session, connector)

        assert len(errors) == 2
        assert len(connector.urls) == 3
        assert not session.is_terminated
        await session.terminate()

    @pytest.mark.asyncio
    async def test_reconnect_twice_fires_single_connect(self, test_settings, connector, mock_api) -> None:
        """连续两次 reconnect 只会产生一次新的连接。"""
        session = make_session(test_settings, connector, mock_api)
        await session.connect()
        await joined(session, connector)

        await session.reconnect()
        await session.reconnect()
        await joined(session, connector, count=2)
        await asyncio.sleep(TICK * 3)

        assert len(connector.transports) == 2
        await session.terminate()

    @pytest.mark.asyncio
    async def test_no_reconnect_after_terminate(self, test_settings, connector, mock_api) -> None:
        """terminate 之后即使处于重连等待中，也不会再建立连接。"""
        session = make_session(test_settings, connector, mock_api)
        await session.connect()
        await joined(session, connector)

        connector.latest.server_close(1006, "")
        await wait_until(lambda: session.state == SessionState.CLOSING)
        await session.terminate()
        await asyncio.sleep(TICK * 4)

        assert len(connector.transports) == 1
        assert session.state == SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, test_settings, connector, mock_api) -> None:
        """两次 terminate 与一次效果相同，只发布一次 close。"""
        session = make_session(test_settings, connector, mock_api)
        closes: list[tuple] = []
        session.on(EventName.CLOSE, lambda *args: closes.append(args))
        await session.connect()
        await joined(session, connector)
        connector.latest.feed(JOIN_REPLY)
        await wait_until(lambda: session.heartbeat.running)

        await session.terminate()
        await session.terminate()
        await asyncio.sleep(TICK * 3)

        assert session.is_terminated
        assert session.state == SessionState.TERMINATED
        assert len(closes) == 1
        assert connector.latest.closed
        assert not session.heartbeat.running
        assert len(connector.transports) == 1

    @pytest.mark.asyncio
    async def test_connect_after_terminate_is_noop(self, test_settings, connector, mock_api) -> None:
        session = make_session(test_settings, connector, mock_api)
        await session.terminate()
        await session.connect()

        await asyncio.sleep(TICK)
        assert connector.urls == []


# ── 断开时的礼物合并 ──────────────────────────────────────────────────

class TestPendingGifts:
    """断开连接时未结束的礼物合并。"""

    @pytest.mark.asyncio
    async def test_pending_bundles_dropped_by_default(self, test_settings, connector, mock_api) -> None:
        session = make_session(test_settings, connector, mock_api)
        bundles: list = []
        session.on(EventName.GIFT_BUNDLE, bundles.append)
        await session.connect()
        await joined(session, connector)
        connector.latest.feed(codec.encode_command(gift_cmd(1, 1, 3)))
        await wait_until(lambda: len(session.gifts) == 1)

        await session.terminate()
        await asyncio.sleep(TICK * 3)

        assert bundles == []
        assert len(session.gifts) == 0

    @pytest.mark.asyncio
    async def test_pending_bundles_flushed_when_enabled(self, test_settings, connector, mock_api) -> None:
        settings = test_settings.model_copy(update={"FLUSH_GIFTS_ON_DISCONNECT": True})
        session = make_session(settings, connector, mock_api)
        bundles: list[GiftMessage] = []
        session.on(EventName.GIFT_BUNDLE, bundles.append)
        await session.connect()
        await joined(session, connector)
        connector.latest.feed(codec.encode_command(gift_cmd(1, 1, 3)) + codec.encode_command(gift_cmd(1, 1, 4)))
        await wait_until(lambda: len(session.gifts) == 1 and session.gifts.get((1, 1)).accumulated_count == 7)

        await session.terminate()

        assert len(bundles) == 1
        assert bundles[0].gift.count == 7


# ── 粉丝轮询 ──────────────────────────────────────────────────────────

class TestFans:
    """测试会话中的粉丝轮询集成。"""

    @pytest.mark.asyncio
    async def test_fans_updates_published(self, test_settings, connector, mock_api) -> None:
        """开启粉丝轮询后，fans 与 data 事件都会收到轮询结果。"""
        mock_api.fetch_fans.side_effect = [
            FansPage(total=3, ids=[3, 2, 1]),
            FansPage(total=4, ids=[4, 3, 2, 1]),
        ] + [FansPage(total=4, ids=[4, 3, 2, 1])] * 50
        session = make_session(test_settings, connector, mock_api, direct_connect=False, use_fans_service=True)
        fans: list[FansUpdate] = []
        data: list = []
        session.on(EventName.FANS, fans.append)
        session.on(EventName.DATA, data.append)

        await session.init()
        await wait_until(lambda: len(fans) >= 2)
        await session.terminate()

        assert fans[0].new_fans == []
        assert fans[1].new_fans == [4]
        assert fans[1].total == 4
        assert fans[0] in data
        mock_api.fetch_fans.assert_any_await(9617619, 1)

    @pytest.mark.asyncio
    async def test_poller_stopped_on_terminate(self, test_settings, connector, mock_api) -> None:
        mock_api.fetch_fans.return_value = FansPage(total=1, ids=[1])
        session = make_session(test_settings, connector, mock_api, direct_connect=False, use_fans_service=True)
        await session.init()
        await wait_until(lambda: mock_api.fetch_fans.await_count >= 2)

        await session.terminate()
        calls = mock_api.fetch_fans.await_count
        await asyncio.sleep(TICK * 3)

        assert mock_api.fetch_fans.await_count == calls

    @pytest.mark.asyncio
    async def test_direct_connect_skips_poller(self, test_settings, connector, mock_api) -> None:
        """直连模式不知道主播 UID，不启动粉丝轮询。"""
        session = make_session(test_settings, connector, mock_api, use_fans_service=True)
        await session.init()
        await joined(session, connector)

        assert session.poller is None
        mock_api.fetch_fans.assert_not_called()
        await session.terminate()
