"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

REST 接口与 Socket 聊天的限流配置。
"""
from __future__ import annotations

import time

from slowapi import Limiter
from slowapi.util import get_remote_address

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


# --------- 聊天限流器 ---------
class ChatRateLimiter:
    """基于内存的聊天消息限流器。

    记录每个连接上一次发送消息的时间，发送过快时拒绝。
    ``interval_seconds`` 为 0 时不做任何限制。
    """

    def __init__(self, interval_seconds: float = 0.3) -> None:
        self.interval_seconds = interval_seconds
        # key 为 Socket 连接 ID
        self._last_message_time: dict[str, float] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查连接是否允许发送消息。允许时同时更新上次发送时间。"""
        if self.interval_seconds <= 0:
            return True

        now = time.monotonic()
        last_time = self._last_message_time.get(client_id)

        if last_time is None or now - last_time >= self.interval_seconds:
            self._last_message_time[client_id] = now
            return True
        return False

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._last_message_time.pop(client_id, None)
