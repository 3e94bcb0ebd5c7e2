"""
app.core.settings
~~~~~~~~~~~~~~~~~

服务配置（pydantic-settings）。

取值优先级：环境变量 > ``.env.{ENVIRONMENT}`` > ``.env`` > 字段默认值。
除 ``JWT_SECRET`` 外都有默认值，本地开发只需要提供签名密钥。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# 决定额外加载哪个 .env 文件，必须在 Settings 定义前读取
_ENV_NAME: str = os.getenv("ENVIRONMENT", "dev")

_DEFAULT_LOG_LEVELS: dict[str, str] = {"dev": "INFO", "test": "DEBUG", "prod": "WARNING"}


class Settings(BaseSettings):
    """直播实时服务配置。"""

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENV_NAME}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = "Live Presence Backend"
    VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["dev", "test", "prod"] = "dev"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str | None = Field(default=None, description="不设置时按环境推断")
    ALLOWED_ORIGINS: list[str] = Field(
        default_factory=list,
        description="prod 环境允许的 CORS 来源",
    )

    # ── 鉴权 ──────────────────────────────────────────────────────────
    JWT_SECRET: str = Field(..., description="JWT 签名密钥")
    JWT_ALGORITHM: str = "HS256"
    BROADCASTER_ROLE: str = Field(default="streamer", description="允许开播 / 下播的角色")
    DEFAULT_AVATAR: str = Field(
        default="https://cdn-icons-png.flaticon.com/512/3541/3541871.png",
        description="未设置头像时的占位图",
    )

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "live_presence"
    MONGO_TIMEOUT_MS: int = Field(default=5000, ge=100, description="选择节点的超时（毫秒）")

    # ── 实时通道 ──────────────────────────────────────────────────────
    SOCKETIO_PATH: str = "socket.io"
    BROADCAST_DEBOUNCE_SECONDS: float = Field(default=0.1, ge=0, description="直播列表广播的防抖窗口")
    ORPHAN_SWEEP_INTERVAL_SECONDS: float = Field(default=30.0, ge=0, description="孤儿巡检周期，0 关闭")
    CHAT_MAX_LENGTH: int = Field(default=500, ge=1)
    CHAT_RATE_LIMIT_INTERVAL: float = Field(default=0.3, ge=0, description="聊天最小发送间隔，0 不限流")

    @field_validator("SOCKETIO_PATH")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        # ASGIApp 期望不带首尾斜杠的路径
        return value.strip("/") or "socket.io"

    # ── 派生属性 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def debug(self) -> bool:
        """仅 dev 环境开启 debug 与热重载。"""
        return self.ENVIRONMENT == "dev"

    @property
    def reload(self) -> bool:
        return self.debug

    @property
    def effective_log_level(self) -> str:
        """显式配置的 ``LOG_LEVEL`` 优先，否则 dev=INFO / test=DEBUG / prod=WARNING。"""
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return _DEFAULT_LOG_LEVELS.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """进程内只解析一次配置。"""
    return Settings()


settings: Settings = get_settings()
