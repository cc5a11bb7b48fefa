"""
playroom.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~

API 与 WebSocket 的限流配置。
"""
from __future__ import annotations

import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from playroom.core.settings import settings

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流，测试环境可通过 RATE_LIMIT_ENABLED=false 关闭
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)


# --------- WebSocket 限流器 ---------
class WebSocketRateLimiter:
    """基于内存的简单 WebSocket 消息限流器。

    记录每个连接上一次被接受的消息时间，间隔过短的消息被拒绝。
    房间 WebSocket 用它限制心跳帧频率。
    """

    def __init__(self, interval_seconds: float = 1.0) -> None:
        self.interval_seconds = interval_seconds
        self._last_message_time: dict[int, float] = {}

    def is_allowed(self, client_id: int) -> bool:
        """检查客户端是否允许发送消息。

        Args:
            client_id: 客户端唯一标识（如 ``id(websocket)``）。

        Returns:
            是否允许发送。如果允许，则同时更新上次发送时间。
        """
        now = time.monotonic()
        last_time = self._last_message_time.get(client_id)

        if last_time is None or now - last_time >= self.interval_seconds:
            self._last_message_time[client_id] = now
            return True
        return False

    def remove_client(self, client_id: int) -> None:
        """清理断开连接的客户端记录。"""
        self._last_message_time.pop(client_id, None)
