"""
live_client.core.config
~~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal
from urllib.parse import urlsplit, urlunsplit

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Live Danmaku Client", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 直播间 ────────────────────────────────────────────────────────
    ROOM_ID: int = Field(default=23058, description="直播间号（短号或真实房间号）")
    USER_ID: int | None = Field(
        default=None,
        description="进房使用的用户 ID，留空则随机生成",
    )
    DIRECT_CONNECT: bool = Field(
        default=False,
        description="跳过房间号解析，直接使用 ROOM_ID 连接",
    )
    USE_FANS_SERVICE: bool = Field(default=True, description="是否轮询主播粉丝列表")

    # ── 弹幕服务器 ────────────────────────────────────────────────────
    USE_TLS: bool = Field(default=True, description="是否使用加密连接（wss）")
    DM_SERVER: str = Field(
        default="broadcastlv.chat.bilibili.com",
        description="弹幕服务器地址",
    )
    DM_PORT: int = Field(default=2244, description="明文端口（ws）")
    DM_TLS_PORT: int = Field(default=2245, description="加密端口（wss）")
    DM_PATH: str = Field(default="sub", description="弹幕服务路径")

    # ── HTTP 接口 ─────────────────────────────────────────────────────
    LIVE_API_BASE: str = Field(
        default="https://api.live.bilibili.com",
        description="直播间信息接口地址",
    )
    USER_API_BASE: str = Field(
        default="https://api.bilibili.com",
        description="用户关系（粉丝）接口地址",
    )
    HTTP_TIMEOUT: float = Field(default=10.0, description="HTTP 请求超时（秒）")

    # ── 定时器（秒） ──────────────────────────────────────────────────
    RECONNECT_DELAY: float = Field(default=3.0, description="断线重连延迟")
    HEARTBEAT_INTERVAL: float = Field(default=30.0, description="心跳间隔")
    GIFT_QUIET_PERIOD: float = Field(default=3.0, description="礼物连击合并的静默期")
    FANS_POLL_INTERVAL: float = Field(default=5.0, description="粉丝列表轮询间隔")
    FANS_FAILURE_THRESHOLD: int = Field(
        default=0,
        description="连续拉取粉丝失败多少次后发出 fans_degraded 事件，0 表示不发出",
    )
    FLUSH_GIFTS_ON_DISCONNECT: bool = Field(
        default=False,
        description="断开连接时是否立即发出尚未结束的礼物合并事件（默认丢弃）",
    )

    # ── 本地转发服务 ──────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    # ── 连接地址 ──────────────────────────────────────────────────────

    @property
    def http_scheme(self) -> str:
        """HTTP 接口使用的协议，跟随 ``USE_TLS``。"""
        return "https" if self.USE_TLS else "http"

    def api_url(self, base: str, use_tls: bool | None = None) -> str:
        """把接口基地址的协议替换为当前选择的协议。"""
        scheme = self.http_scheme if use_tls is None else ("https" if use_tls else "http")
        return urlunsplit(urlsplit(base)._replace(scheme=scheme))

    def ws_url(self, use_tls: bool | None = None) -> str:
        """拼接弹幕服务器地址。

        Args:
            use_tls: 是否使用加密端点，为 None 时取 ``USE_TLS``。
        """
        tls = self.USE_TLS if use_tls is None else use_tls
        if tls:
            return f"wss://{self.DM_SERVER}:{self.DM_TLS_PORT}/{self.DM_PATH}"
        return f"ws://{self.DM_SERVER}:{self.DM_PORT}/{self.DM_PATH}"


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
