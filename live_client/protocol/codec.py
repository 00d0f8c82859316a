"""
live_client.protocol.codec
~~~~~~~~~~~~~~~~~~~~~~~~~~

弹幕协议编解码器（无状态）。

每个数据包由 16 字节大端头部 + 正文组成::

    packet_len(u32) | header_len(u16) | version(u16) | operation(u32) | sequence(u32)

- ``version == 2`` 的正文是 zlib 压缩后的若干个完整数据包
- ``operation``: 2 心跳 / 3 心跳回包（人气值） / 5 命令消息 / 7 进房 / 8 进房回包

``decode()`` 永远不会向调用方抛出异常：格式错误的数据包被丢弃，
无法识别的命令被解码为 ``UnknownMessage``。
"""
from __future__ import annotations

import json
import struct
import zlib
from typing import Any

from live_client.core.exceptions import DecodeError
from live_client.core.logging import get_logger
from live_client.schemas.messages import (
    BlockMessage,
    ConnectedMessage,
    DanmakuMessage,
    GiftInfo,
    GiftMessage,
    GuardMessage,
    LiveMessage,
    LiveStatusMessage,
    MessageKind,
    OnlineMessage,
    UnknownMessage,
    UserInfo,
    WelcomeMessage,
)

logger = get_logger(__name__)

HEADER = struct.Struct(">IHHII")
HEADER_LEN: int = HEADER.size

OP_HEARTBEAT = 2
OP_HEARTBEAT_REPLY = 3
OP_MESSAGE = 5
OP_JOIN = 7
OP_JOIN_REPLY = 8

VER_PLAIN = 1
VER_ZLIB = 2

# 压缩包最多嵌套层数，以及单个压缩正文解压后的字节上限
MAX_NESTING = 4
MAX_DECOMPRESSED = 1 << 20


def encode_packet(operation: int, body: bytes = b"", version: int = VER_PLAIN) -> bytes:
    """为正文加上 16 字节包头。"""
    return HEADER.pack(HEADER_LEN + len(body), HEADER_LEN, version, operation, 1) + body


def encode_join(room_id: int, user_id: int) -> bytes:
    """编码进房数据包。"""
    body = json.dumps(
        {"uid": user_id, "roomid": room_id, "protover": VER_ZLIB},
        separators=(",", ":"),
    ).encode("utf-8")
    return encode_packet(OP_JOIN, body)


def encode_heartbeat() -> bytes:
    """编码心跳数据包。"""
    return encode_packet(OP_HEARTBEAT, b"[object Object]")


def encode_command(payload: dict[str, Any], version: int = VER_PLAIN) -> bytes:
    """把一条 JSON 命令编码为数据包（``version=2`` 时压缩正文）。

    主要供测试和本地模拟服务器使用。
    """
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    if version == VER_ZLIB:
        return encode_packet(OP_MESSAGE, zlib.compress(encode_packet(OP_MESSAGE, body)), VER_ZLIB)
    return encode_packet(OP_MESSAGE, body)


def _inflate(body: bytes) -> bytes:
    inflater = zlib.decompressobj()
    try:
        inflated = inflater.decompress(body, MAX_DECOMPRESSED)
    except zlib.error as e:
        raise DecodeError(f"zlib 解压失败: {e}") from e
    if inflater.unconsumed_tail:
        raise DecodeError(f"解压后超过 {MAX_DECOMPRESSED} 字节")
    if not inflater.eof:
        raise DecodeError("zlib 数据不完整")
    return inflated


def _split_packets(data: bytes, depth: int = 0) -> list[tuple[int, int, bytes]]:
    """把一帧拆分为 ``(version, operation, body)`` 列表。"""
    if depth > MAX_NESTING:
        raise DecodeError(f"压缩包嵌套超过 {MAX_NESTING} 层")
    packets: list[tuple[int, int, bytes]] = []
    offset = 0
    while offset < len(data):
        if len(data) - offset < HEADER_LEN:
            raise DecodeError(f"剩余 {len(data) - offset} 字节不足一个包头")
        packet_len, header_len, version, operation, _ = HEADER.unpack_from(data, offset)
        if packet_len < header_len or header_len < HEADER_LEN or offset + packet_len > len(data):
            raise DecodeError(f"包长度非法: packet_len={packet_len} header_len={header_len}")
        body = data[offset + header_len: offset + packet_len]
        if version == VER_ZLIB and operation == OP_MESSAGE:
            packets.extend(_split_packets(_inflate(body), depth + 1))
        else:
            packets.append((version, operation, body))
        offset += packet_len
    return packets


def _parse_command(payload: dict[str, Any]) -> LiveMessage:
    """把 JSON 命令转换为对应类型的消息。"""
    cmd = str(payload.get("cmd", ""))
    # 新版服务器会在命令后追加 ``:参数``，如 ``DANMU_MSG:4:0:2:2:2:0``
    name = cmd.split(":", 1)[0]
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}

    if name == "DANMU_MSG":
        info = payload["info"]
        return DanmakuMessage(
            user=UserInfo(id=int(info[2][0]), name=str(info[2][1])),
            content=str(info[1]),
        )
    if name == "SEND_GIFT":
        timestamp = data.get("timestamp")
        extra = {"ts": int(timestamp) * 1000} if timestamp else {}
        return GiftMessage(
            user=UserInfo(id=int(data["uid"]), name=str(data.get("uname", ""))),
            gift=GiftInfo(
                id=int(data["giftId"]),
                name=str(data.get("giftName", "")),
                count=int(data.get("num", 1)),
                price=int(data.get("price", 0)),
            ),
            **extra,
        )
    if name in ("WELCOME", "WELCOME_GUARD"):
        message = WelcomeMessage(
            user=UserInfo(id=int(data["uid"]), name=str(data.get("uname") or data.get("username", ""))),
        )
        if name == "WELCOME_GUARD":
            return message.model_copy(update={"kind": MessageKind.WELCOME_GUARD})
        return message
    if name == "GUARD_BUY":
        return GuardMessage(
            user=UserInfo(id=int(data["uid"]), name=str(data.get("username", ""))),
            level=int(data.get("guard_level", 0)),
        )
    if name == "ROOM_BLOCK_MSG":
        return BlockMessage(
            user=UserInfo(id=int(payload.get("uid") or data["uid"]), name=str(payload.get("uname") or data.get("uname", ""))),
        )
    if name in ("LIVE", "PREPARING"):
        return LiveStatusMessage(status=name.lower())
    return UnknownMessage(cmd=cmd, raw=payload)


def _decode_packet(operation: int, body: bytes) -> LiveMessage | None:
    if operation == OP_JOIN_REPLY:
        return ConnectedMessage()
    if operation == OP_HEARTBEAT_REPLY:
        count = int.from_bytes(body[:4], "big") if len(body) >= 4 else 0
        return OnlineMessage(count=count)
    if operation == OP_MESSAGE:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
            raise DecodeError(f"命令正文不是合法 JSON: {e}") from e
        if not isinstance(payload, dict):
            raise DecodeError("命令正文不是 JSON 对象")
        try:
            return _parse_command(payload)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError, OverflowError):
            logger.debug("命令字段缺失，按未知消息处理 | cmd=%s", payload.get("cmd"))
            return UnknownMessage(cmd=str(payload.get("cmd", "")), raw=payload)
    return None


def decode(data: bytes) -> list[LiveMessage]:
    """解码一帧数据，返回其中包含的所有消息（按出现顺序，可能为空）。

    Args:
        data: websocket 收到的原始二进制帧。

    Returns:
        消息列表。整帧格式错误时返回空列表；单个包格式错误时跳过该包。
    """
    try:
        if isinstance(data, str):
            data = data.encode("utf-8")
        packets = _split_packets(bytes(data))
    except DecodeError as e:
        logger.warning("丢弃格式错误的数据帧: %s", e)
        return []

    messages: list[LiveMessage] = []
    for _, operation, body in packets:
        try:
            message = _decode_packet(operation, body)
        except DecodeError as e:
            logger.warning("丢弃格式错误的数据包 | op=%d | %s", operation, e)
            continue
        if message is not None:
            messages.append(message)
    return messages
